import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List

from backend import SharedStore
from constants import NOTIFICATIONS_PER_USER, NOTIFICATIONS_TTL_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import USER_NOTIFICATIONS_KEY

logger = get_logger(__name__)


class NotificationQueue:
    """Per-user list of personal notifications, newest first, capped and expiring."""

    def __init__(self, store: SharedStore, per_user: int = NOTIFICATIONS_PER_USER,
                 ttl_seconds: int = NOTIFICATIONS_TTL_SECONDS):
        self.store = store
        self.per_user = per_user
        self.ttl_seconds = ttl_seconds
        # user_id -> notifications, newest first
        self._local: Dict[str, Deque[Dict[str, Any]]] = {}

    async def queue(self, user_id: str, notification: Dict[str, Any]) -> Dict[str, Any]:
        entry = {
            **notification,
            "userId": user_id,
            "id": uuid.uuid4().hex,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "read": False,
        }
        ring = self._local.get(user_id)
        if ring is None:
            ring = self._local[user_id] = deque(maxlen=self.per_user)
        ring.appendleft(entry)
        await self.store.list_push_trim(USER_NOTIFICATIONS_KEY.format(user_id=user_id), entry,
                                        self.per_user, ttl_seconds=self.ttl_seconds)
        logger.debug(f"Queued notification {entry['id']} for user {user_id}")
        return entry

    async def list(self, user_id: str, count: int = 20) -> List[Dict[str, Any]]:
        if count <= 0:
            return []
        local = list(self._local.get(user_id, ()))[:count]
        try:
            remote = await self.store.list_range(USER_NOTIFICATIONS_KEY.format(user_id=user_id), 0, count - 1,
                                                 strict=True)
        except StoreUnavailable:
            return local
        return remote if len(remote) >= len(local) else local

    async def unread(self, user_id: str, count: int = 20) -> List[Dict[str, Any]]:
        return [n for n in await self.list(user_id, self.per_user) if not n.get("read")][:count]

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        found = False
        for entry in self._local.get(user_id, ()):
            if entry.get("id") == notification_id:
                entry["read"] = True
                found = True
        key = USER_NOTIFICATIONS_KEY.format(user_id=user_id)
        try:
            remote = await self.store.list_range(key, 0, -1, strict=True)
            for index, entry in enumerate(remote):
                if isinstance(entry, dict) and entry.get("id") == notification_id:
                    entry["read"] = True
                    await self.store.list_set(key, index, entry, strict=True)
                    found = True
                    break
        except StoreUnavailable:
            logger.debug(f"Marked notification {notification_id} read locally only")
        return found
