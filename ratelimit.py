import time
from typing import Callable, Dict, Tuple

from backend import SharedStore
from constants import RATE_LIMIT_MESSAGES, RATE_LIMIT_WINDOW_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import RATE_KEY

logger = get_logger(__name__)


class RealtimeRateLimiter:
    """Fixed-window counters per (user, action) for realtime events.

    Counts in the shared store when it answers and in a process-local window
    otherwise, so limiting keeps working through an outage.
    """

    def __init__(self, store: SharedStore, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.clock = clock
        # key -> (window_started_at, count)
        self._local: Dict[str, Tuple[float, int]] = {}

    def _local_incr(self, key: str, window_seconds: int) -> int:
        now = self.clock()
        started, count = self._local.get(key, (now, 0))
        if now - started >= window_seconds:
            started, count = now, 0
        count += 1
        self._local[key] = (started, count)
        return count

    def _local_count(self, key: str, window_seconds: int) -> int:
        started, count = self._local.get(key, (0.0, 0))
        if self.clock() - started >= window_seconds:
            return 0
        return count

    async def check_limit(self, user_id: str, action: str, limit: int = RATE_LIMIT_MESSAGES,
                          window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> bool:
        key = RATE_KEY.format(user_id=user_id, action=action)
        try:
            current = await self.store.incr_window(key, window_seconds, strict=True)
        except StoreUnavailable:
            current = self._local_incr(key, window_seconds)
        allowed = current <= limit
        if not allowed:
            logger.info(f"Rate limit hit for user {user_id} on {action} ({current}/{limit})")
        return allowed

    async def remaining(self, user_id: str, action: str, limit: int = RATE_LIMIT_MESSAGES,
                        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS) -> int:
        key = RATE_KEY.format(user_id=user_id, action=action)
        try:
            current = int(await self.store.get(key, strict=True) or 0)
        except StoreUnavailable:
            current = self._local_count(key, window_seconds)
        return max(0, limit - current)
