import asyncio
import json
import time
from typing import Any, Awaitable, Callable, List, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from constants import REDIS_URL, STORE_REPROBE_SECONDS, STORE_TIMEOUT_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _encode(value: Any) -> str:
    return json.dumps(value)


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class SharedStore:
    """Best-effort adapter over the shared Redis store.

    Every call is bounded by ``timeout`` seconds. A failed or timed out call marks
    the store unavailable; later calls short-circuit without I/O until
    ``reprobe_interval`` has elapsed, and the first call after that acts as the
    probe. Callers get the default result on failure, or ``StoreUnavailable``
    when they pass ``strict=True`` because they must tell "down" from "absent".
    """

    def __init__(self, client=None, timeout: float = STORE_TIMEOUT_SECONDS,
                 reprobe_interval: float = STORE_REPROBE_SECONDS):
        self.client = client
        self.timeout = timeout
        self.reprobe_interval = reprobe_interval
        self._available = client is not None
        self._retry_at = 0.0
        if client is None:
            logger.warning("SharedStore created without a backend, presence runs in-process only")

    @classmethod
    def from_url(cls, url: str = REDIS_URL, **kwargs) -> "SharedStore":
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=kwargs.get("timeout", STORE_TIMEOUT_SECONDS),
        )
        logger.info(f"Initializing SharedStore for {url.split('@')[-1]}")
        return cls(client, **kwargs)

    @classmethod
    def disabled(cls) -> "SharedStore":
        return cls(None)

    def is_available(self) -> bool:
        return self.client is not None and self._available

    def _should_attempt(self) -> bool:
        if self.client is None:
            return False
        return self._available or time.monotonic() >= self._retry_at

    def _mark_unavailable(self, operation: str, error: BaseException):
        self._retry_at = time.monotonic() + self.reprobe_interval
        if self._available:
            logger.warning(f"Shared store unavailable during {operation}: {error!r}; "
                           f"using in-process fallback, re-probing in {self.reprobe_interval}s")
        else:
            logger.debug(f"Shared store still unavailable during {operation}: {error!r}")
        self._available = False

    def _mark_available(self):
        if not self._available:
            logger.info("Shared store reachable again")
        self._available = True

    async def _execute(self, operation: str, call: Callable[[], Awaitable[Any]],
                       default: Any = None, strict: bool = False) -> Any:
        if not self._should_attempt():
            if strict:
                raise StoreUnavailable(operation)
            return default
        try:
            result = await asyncio.wait_for(call(), timeout=self.timeout)
        except STORE_ERRORS as e:
            self._mark_unavailable(operation, e)
            if strict:
                raise StoreUnavailable(operation, repr(e)) from e
            return default
        self._mark_available()
        return result

    async def probe(self) -> bool:
        """Ping the backend, bypassing the re-probe cool-off."""
        if self.client is None:
            return False
        self._retry_at = 0.0
        result = await self._execute("ping", lambda: self.client.ping(), default=False)
        return bool(result) and self._available

    async def close(self):
        if self.client is None:
            return
        try:
            await self.client.aclose()
            logger.info("SharedStore connection closed")
        except STORE_ERRORS as e:
            logger.debug(f"Error closing SharedStore: {e}")

    # Key/value

    async def get(self, key: str, strict: bool = False) -> Any:
        raw = await self._execute("get", lambda: self.client.get(key), strict=strict)
        return _decode(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None, strict: bool = False) -> bool:
        payload = _encode(value)
        result = await self._execute(
            "set", lambda: self.client.set(key, payload, ex=ttl_seconds or None), default=False, strict=strict
        )
        return bool(result)

    async def delete(self, key: str, strict: bool = False) -> bool:
        deleted = await self._execute("delete", lambda: self.client.delete(key), default=0, strict=strict)
        return bool(deleted)

    async def delete_by_pattern(self, prefix: str, strict: bool = False) -> int:
        async def _delete_matching():
            count = 0
            batch = []
            async for key in self.client.scan_iter(match=f"{prefix}*"):
                batch.append(key)
                if len(batch) >= 500:
                    count += await self.client.delete(*batch)
                    batch = []
            if batch:
                count += await self.client.delete(*batch)
            return count

        count = await self._execute("delete_by_pattern", _delete_matching, default=0, strict=strict)
        logger.debug(f"Deleted {count} keys matching {prefix}*")
        return count

    async def expire(self, key: str, ttl_seconds: int, strict: bool = False) -> bool:
        result = await self._execute("expire", lambda: self.client.expire(key, ttl_seconds),
                                     default=False, strict=strict)
        return bool(result)

    # Sets

    async def set_add(self, key: str, member: str, ttl_seconds: Optional[int] = None, strict: bool = False) -> bool:
        async def _add():
            added = await self.client.sadd(key, member)
            if ttl_seconds:
                await self.client.expire(key, ttl_seconds)
            return added

        return bool(await self._execute("set_add", _add, default=0, strict=strict))

    async def set_remove(self, key: str, member: str, strict: bool = False) -> bool:
        removed = await self._execute("set_remove", lambda: self.client.srem(key, member), default=0, strict=strict)
        return bool(removed)

    async def set_members(self, key: str, strict: bool = False) -> Set[str]:
        members = await self._execute("set_members", lambda: self.client.smembers(key), default=set(), strict=strict)
        return set(members)

    async def set_size(self, key: str, strict: bool = False) -> int:
        return int(await self._execute("set_size", lambda: self.client.scard(key), default=0, strict=strict))

    # Lists (newest first)

    async def list_push_trim(self, key: str, value: Any, max_length: int,
                             ttl_seconds: Optional[int] = None, strict: bool = False) -> bool:
        payload = _encode(value)

        async def _push():
            await self.client.lpush(key, payload)
            await self.client.ltrim(key, 0, max_length - 1)
            if ttl_seconds:
                await self.client.expire(key, ttl_seconds)
            return True

        return bool(await self._execute("list_push_trim", _push, default=False, strict=strict))

    async def list_range(self, key: str, start: int, end: int, strict: bool = False) -> List[Any]:
        items = await self._execute("list_range", lambda: self.client.lrange(key, start, end),
                                    default=[], strict=strict)
        return [_decode(item) for item in items]

    async def list_set(self, key: str, index: int, value: Any, strict: bool = False) -> bool:
        payload = _encode(value)
        result = await self._execute("list_set", lambda: self.client.lset(key, index, payload),
                                     default=False, strict=strict)
        return bool(result)

    # Counters

    async def incr_window(self, key: str, window_seconds: int, strict: bool = False) -> int:
        """Increment a counter, starting its expiry window on the first hit."""
        async def _incr():
            current = await self.client.incr(key)
            if current == 1:
                await self.client.expire(key, window_seconds)
            return current

        return int(await self._execute("incr_window", _incr, default=0, strict=strict))
