from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List

from backend import SharedStore
from constants import RECENT_MESSAGES_SIZE, RECENT_MESSAGES_TTL_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import ROOM_MESSAGES_KEY

logger = get_logger(__name__)


class RecentMessageCache:
    """Bounded per-room buffer of recent chat messages, replayed on join.

    Not authoritative: the persistent message store keeps full history, so a
    miss here only means a shorter replay. Each append goes to a process-local
    ring and, best-effort, to a capped list in the shared store.
    """

    def __init__(self, store: SharedStore, capacity: int = RECENT_MESSAGES_SIZE,
                 ttl_seconds: int = RECENT_MESSAGES_TTL_SECONDS):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.store = store
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._local: Dict[str, Deque[Dict[str, Any]]] = {}

    async def append(self, room_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        entry = dict(message)
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        ring = self._local.get(room_id)
        if ring is None:
            ring = self._local[room_id] = deque(maxlen=self.capacity)
        ring.append(entry)
        await self.store.list_push_trim(ROOM_MESSAGES_KEY.format(room_id=room_id), entry,
                                        self.capacity, ttl_seconds=self.ttl_seconds)
        return entry

    async def recent(self, room_id: str, limit: int) -> List[Dict[str, Any]]:
        """Up to ``limit`` most recent messages, oldest first."""
        limit = min(limit, self.capacity)
        if limit <= 0:
            return []
        local = list(self._local.get(room_id, ()))[-limit:]
        try:
            newest_first = await self.store.list_range(ROOM_MESSAGES_KEY.format(room_id=room_id), 0, limit - 1,
                                                       strict=True)
        except StoreUnavailable:
            logger.debug(f"Recent messages for room {room_id} served from local ring")
            return local
        remote = list(reversed(newest_first))
        # The store can lag behind this process after an outage; serve whichever is more complete.
        if len(remote) < len(local):
            return local
        return remote

    async def clear(self, room_id: str):
        self._local.pop(room_id, None)
        await self.store.delete(ROOM_MESSAGES_KEY.format(room_id=room_id))
        logger.info(f"Cleared recent messages for room {room_id}")
