"""Presence registry: which connections belong to which user, and which users occupy which room.

Two interchangeable backends implement the same operations:

- ``RedisPresenceBackend`` keeps everything in the shared store with a TTL on
  every key it touches, so entries written by a crashed process expire on
  their own. Entries of live connections have their TTL re-asserted
  periodically by ``PresenceRegistry.refresh``.
- ``MemoryPresenceBackend`` keeps the same tables in process memory. It is the
  degraded-mode fallback and is not shared between processes.

``PresenceRegistry`` routes each call to the store-backed backend and falls back
to the in-process one whenever the store raises ``StoreUnavailable``. Store
failures are logged and never reach connection handling code.
"""
import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Optional, Set, Tuple

from backend import SharedStore
from constants import PRESENCE_PENDING_LIMIT, PRESENCE_REFRESH_SECONDS, PRESENCE_TTL_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import ONLINE_USERS_KEY, PRESENCE_USER_KEY, ROOM_MEMBERS_KEY, ROOM_USER_CONNS_KEY

logger = get_logger(__name__)


class PresenceBackend(ABC):

    @abstractmethod
    async def add_connection(self, user_id: str, connection_id: str) -> bool:
        """Add connection_id to the user's set. Returns True if it was not there yet."""

    @abstractmethod
    async def remove_connection(self, user_id: str, connection_id: str) -> bool:
        """Remove connection_id from the user's set. Returns True if it was present."""

    @abstractmethod
    async def connections_of(self, user_id: str) -> Set[str]:
        ...

    @abstractmethod
    async def online_users(self) -> Set[str]:
        """Users with at least one live connection."""

    @abstractmethod
    async def add_room_connection(self, room_id: str, user_id: str, connection_id: str) -> bool:
        """Subscribe a connection to a room. Returns True if the user newly occupies the room."""

    @abstractmethod
    async def remove_room_connection(self, room_id: str, user_id: str, connection_id: str) -> bool:
        """Unsubscribe a connection. Returns True if the user no longer occupies the room."""

    @abstractmethod
    async def room_members(self, room_id: str) -> Set[str]:
        ...

    @abstractmethod
    async def room_connections(self, room_id: str, user_id: str) -> Set[str]:
        ...

    async def refresh_connection(self, user_id: str, connection_id: str):
        """Re-assert a live connection's entries. Only expiring backends need this."""

    async def refresh_room_connection(self, room_id: str, user_id: str, connection_id: str):
        """Re-assert a live room subscription's entries."""


class MemoryPresenceBackend(PresenceBackend):
    """Process-local presence tables. Only PresenceRegistry mutates these."""

    def __init__(self):
        # user_id -> {connection_id}
        self.user_connections: Dict[str, Set[str]] = {}
        # room_id -> {user_id -> {connection_id}}
        self.rooms: Dict[str, Dict[str, Set[str]]] = {}

    async def add_connection(self, user_id, connection_id):
        connections = self.user_connections.setdefault(user_id, set())
        added = connection_id not in connections
        connections.add(connection_id)
        return added

    async def remove_connection(self, user_id, connection_id):
        connections = self.user_connections.get(user_id)
        if not connections or connection_id not in connections:
            return False
        connections.discard(connection_id)
        if not connections:
            del self.user_connections[user_id]
        return True

    async def connections_of(self, user_id):
        return set(self.user_connections.get(user_id, ()))

    async def online_users(self):
        return set(self.user_connections)

    async def add_room_connection(self, room_id, user_id, connection_id):
        members = self.rooms.setdefault(room_id, {})
        newly_joined = user_id not in members
        members.setdefault(user_id, set()).add(connection_id)
        return newly_joined

    async def remove_room_connection(self, room_id, user_id, connection_id):
        members = self.rooms.get(room_id)
        if not members or user_id not in members:
            return False
        connections = members[user_id]
        connections.discard(connection_id)
        if connections:
            return False
        del members[user_id]
        if not members:
            del self.rooms[room_id]
        return True

    async def room_members(self, room_id):
        return set(self.rooms.get(room_id, {}))

    async def room_connections(self, room_id, user_id):
        return set(self.rooms.get(room_id, {}).get(user_id, ()))

    def clear(self):
        self.user_connections.clear()
        self.rooms.clear()


class RedisPresenceBackend(PresenceBackend):
    """Presence tables in the shared store. Every call is strict so the registry can fall back.

    Redis drops a set key when its last member is removed, so empty entries never linger.
    """

    def __init__(self, store: SharedStore, ttl_seconds: int = PRESENCE_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def _remove_when_empty(self, index_key: str, set_key: str, member: str) -> bool:
        """Remove member from set_key once index_key is empty.

        Another connection may be added to index_key while we await, so the
        index is re-read after the removal and the member restored if needed.
        """
        if await self.store.set_size(index_key, strict=True) > 0:
            return False
        removed = await self.store.set_remove(set_key, member, strict=True)
        if removed and await self.store.set_size(index_key, strict=True) > 0:
            await self.store.set_add(set_key, member, ttl_seconds=self.ttl_seconds, strict=True)
            return False
        return removed

    async def add_connection(self, user_id, connection_id):
        added = await self.store.set_add(PRESENCE_USER_KEY.format(user_id=user_id), connection_id,
                                         ttl_seconds=self.ttl_seconds, strict=True)
        await self.store.set_add(ONLINE_USERS_KEY, user_id, ttl_seconds=self.ttl_seconds, strict=True)
        return added

    async def remove_connection(self, user_id, connection_id):
        user_key = PRESENCE_USER_KEY.format(user_id=user_id)
        removed = await self.store.set_remove(user_key, connection_id, strict=True)
        await self._remove_when_empty(user_key, ONLINE_USERS_KEY, user_id)
        return removed

    async def connections_of(self, user_id):
        return await self.store.set_members(PRESENCE_USER_KEY.format(user_id=user_id), strict=True)

    async def online_users(self):
        online = set()
        for user_id in await self.store.set_members(ONLINE_USERS_KEY, strict=True):
            if await self.store.set_size(PRESENCE_USER_KEY.format(user_id=user_id), strict=True) > 0:
                online.add(user_id)
            else:
                # Connection set expired with a crashed process
                await self._remove_when_empty(PRESENCE_USER_KEY.format(user_id=user_id), ONLINE_USERS_KEY, user_id)
        return online

    async def add_room_connection(self, room_id, user_id, connection_id):
        await self.store.set_add(ROOM_USER_CONNS_KEY.format(room_id=room_id, user_id=user_id), connection_id,
                                 ttl_seconds=self.ttl_seconds, strict=True)
        return await self.store.set_add(ROOM_MEMBERS_KEY.format(room_id=room_id), user_id,
                                        ttl_seconds=self.ttl_seconds, strict=True)

    async def remove_room_connection(self, room_id, user_id, connection_id):
        conns_key = ROOM_USER_CONNS_KEY.format(room_id=room_id, user_id=user_id)
        await self.store.set_remove(conns_key, connection_id, strict=True)
        return await self._remove_when_empty(conns_key, ROOM_MEMBERS_KEY.format(room_id=room_id), user_id)

    async def room_members(self, room_id):
        return await self.store.set_members(ROOM_MEMBERS_KEY.format(room_id=room_id), strict=True)

    async def room_connections(self, room_id, user_id):
        return await self.store.set_members(ROOM_USER_CONNS_KEY.format(room_id=room_id, user_id=user_id),
                                            strict=True)

    async def refresh_connection(self, user_id, connection_id):
        # SADD is idempotent and also restores an entry that expired or was lost
        await self.add_connection(user_id, connection_id)

    async def refresh_room_connection(self, room_id, user_id, connection_id):
        await self.add_room_connection(room_id, user_id, connection_id)


class PresenceRegistry:
    """Presence and room membership with graceful degradation to process memory.

    Writes go to the store-backed backend, or to the fallback when the store is
    down. Removals are applied to the fallback right away; a removal the store
    could not take is queued and replayed, in order, before the next call that
    reaches the store. Reads merge both backends while the store answers and
    use the fallback alone while it does not.

    The registry also remembers which entries this process holds so
    ``refresh`` can keep their TTLs alive for as long as the connections live.
    Refreshing re-asserts them in the store, which also moves entries written
    to the fallback during an outage into the store once it is back.
    """

    def __init__(self, primary: Optional[PresenceBackend] = None, fallback: Optional[MemoryPresenceBackend] = None,
                 pending_limit: int = PRESENCE_PENDING_LIMIT):
        self.primary = primary
        self.fallback = fallback or MemoryPresenceBackend()
        self.pending_limit = pending_limit
        # (operation, args) removals the store has not seen yet, oldest first
        self.pending: Deque[Tuple[str, tuple]] = deque()
        # connection_id -> user_id
        self.held_connections: Dict[str, str] = {}
        # (room_id, connection_id) -> user_id
        self.held_rooms: Dict[Tuple[str, str], str] = {}

    @classmethod
    def from_store(cls, store: SharedStore, ttl_seconds: int = PRESENCE_TTL_SECONDS) -> "PresenceRegistry":
        primary = RedisPresenceBackend(store, ttl_seconds) if store.client is not None else None
        return cls(primary=primary)

    async def _replay_pending(self):
        replayed = 0
        while self.pending:
            operation, args = self.pending.popleft()
            try:
                await getattr(self.primary, operation)(*args)
            except StoreUnavailable:
                self.pending.appendleft((operation, args))
                raise
            replayed += 1
        logger.info(f"Replayed {replayed} presence removals against the shared store")

    async def _call_primary(self, operation: str, *args):
        if self.primary is None:
            raise StoreUnavailable(operation, "no shared store configured")
        try:
            if self.pending:
                await self._replay_pending()
            return await getattr(self.primary, operation)(*args)
        except StoreUnavailable as e:
            logger.debug(f"Presence {operation} falling back to in-process map: {e}")
            raise

    def _defer(self, operation: str, *args):
        if self.primary is None:
            return
        if len(self.pending) >= self.pending_limit:
            dropped, _ = self.pending.popleft()
            logger.warning(f"Pending presence removals over {self.pending_limit}, dropped oldest {dropped}")
        self.pending.append((operation, args))

    async def _write(self, operation: str, *args):
        try:
            return await self._call_primary(operation, *args)
        except StoreUnavailable:
            return await getattr(self.fallback, operation)(*args)

    async def _remove(self, operation: str, *args) -> bool:
        local = await getattr(self.fallback, operation)(*args)
        try:
            remote = await self._call_primary(operation, *args)
        except StoreUnavailable:
            self._defer(operation, *args)
            return local
        return bool(remote or local)

    async def _read_set(self, operation: str, *args) -> Set[str]:
        local = await getattr(self.fallback, operation)(*args)
        try:
            remote = await self._call_primary(operation, *args)
        except StoreUnavailable:
            return local
        return set(remote) | local

    async def add_connection(self, user_id: str, connection_id: str) -> bool:
        self.held_connections[connection_id] = user_id
        added = await self._write("add_connection", user_id, connection_id)
        logger.debug(f"Presence add {connection_id} for user {user_id} (new={added})")
        return added

    async def remove_connection(self, user_id: str, connection_id: str) -> bool:
        if self.held_connections.get(connection_id) == user_id:
            del self.held_connections[connection_id]
        removed = await self._remove("remove_connection", user_id, connection_id)
        if not removed:
            logger.debug(f"Presence entry for {connection_id} of user {user_id} absent or removal deferred")
        return removed

    async def connections_of(self, user_id: str) -> Set[str]:
        return await self._read_set("connections_of", user_id)

    async def is_online(self, user_id: str) -> bool:
        return len(await self.connections_of(user_id)) > 0

    async def online_users(self) -> Set[str]:
        return await self._read_set("online_users")

    async def add_room_connection(self, room_id: str, user_id: str, connection_id: str) -> bool:
        self.held_rooms[(room_id, connection_id)] = user_id
        return await self._write("add_room_connection", room_id, user_id, connection_id)

    async def remove_room_connection(self, room_id: str, user_id: str, connection_id: str) -> bool:
        if self.held_rooms.get((room_id, connection_id)) == user_id:
            del self.held_rooms[(room_id, connection_id)]
        await self._remove("remove_room_connection", room_id, user_id, connection_id)
        # The user left only if no connection of theirs remains in either table.
        remaining = await self._read_set("room_connections", room_id, user_id)
        return not remaining

    async def room_members(self, room_id: str) -> Set[str]:
        return await self._read_set("room_members", room_id)

    async def room_size(self, room_id: str) -> int:
        return len(await self.room_members(room_id))

    async def room_connections(self, room_id: str, user_id: str) -> Set[str]:
        return await self._read_set("room_connections", room_id, user_id)

    async def refresh(self) -> int:
        """Re-assert every entry this process holds. Returns how many were refreshed."""
        if self.primary is None:
            return 0
        refreshed = 0
        try:
            for connection_id, user_id in list(self.held_connections.items()):
                # Skip entries released while we were awaiting
                if self.held_connections.get(connection_id) != user_id:
                    continue
                await self._call_primary("refresh_connection", user_id, connection_id)
                refreshed += 1
            for (room_id, connection_id), user_id in list(self.held_rooms.items()):
                if self.held_rooms.get((room_id, connection_id)) != user_id:
                    continue
                await self._call_primary("refresh_room_connection", room_id, user_id, connection_id)
                refreshed += 1
        except StoreUnavailable:
            logger.debug(f"Presence refresh stopped after {refreshed} entries, store unavailable")
        else:
            logger.debug(f"Presence refresh re-asserted {refreshed} entries")
        return refreshed

    async def refresh_forever(self, interval_seconds: float = PRESENCE_REFRESH_SECONDS):
        """Run ``refresh`` every interval until cancelled."""
        logger.info(f"Presence refresh running every {interval_seconds}s")
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Presence refresh failed: {e}", exc_info=True)
