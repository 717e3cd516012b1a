import asyncio
import json
from typing import Any, Dict, Iterable, Optional, Set

from events import EventBus, MembershipChanged
from logging_config import get_logger
from presence import PresenceRegistry

logger = get_logger(__name__)

OCCUPANCY_CHANGED = "occupancyChanged"


def make_frame(event: str, data: Dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


class RoomBroadcaster:
    """Fans events out to live connections of a room or of a user.

    Transport subscriptions are local to this process: ``room_subscribers`` maps
    a room to the connection ids that receive its broadcasts. Who *occupies* a
    room is owned by the PresenceRegistry. Every membership mutation is emitted
    as a ``MembershipChanged`` event; this class subscribes to it and answers
    with a freshly recomputed occupancy broadcast.
    """

    def __init__(self, registry: PresenceRegistry, bus: Optional[EventBus] = None):
        self.registry = registry
        self.bus = bus or EventBus()
        # connection_id -> websocket (anything with an async send_text)
        self.transports: Dict[str, Any] = {}
        # room_id -> {connection_id}
        self.room_subscribers: Dict[str, Set[str]] = {}
        self.bus.subscribe(MembershipChanged, self._on_membership_changed)

    def attach(self, connection_id: str, websocket):
        self.transports[connection_id] = websocket
        logger.debug(f"Attached transport for connection {connection_id} ({len(self.transports)} live)")

    def detach(self, connection_id: str):
        self.transports.pop(connection_id, None)
        for room_id in list(self.room_subscribers):
            self._unsubscribe(room_id, connection_id)
        logger.debug(f"Detached transport for connection {connection_id}")

    def _unsubscribe(self, room_id: str, connection_id: str) -> bool:
        subscribers = self.room_subscribers.get(room_id)
        if not subscribers or connection_id not in subscribers:
            return False
        subscribers.discard(connection_id)
        if not subscribers:
            del self.room_subscribers[room_id]
        return True

    def subscribers_of(self, room_id: str) -> Set[str]:
        return set(self.room_subscribers.get(room_id, ()))

    async def join_room(self, room_id: str, user_id: str, connection_id: str, reason: str = "explicit") -> bool:
        """Subscribe the connection to the room and record the user as occupying it.

        A second connection of the same user is subscribed too but leaves
        membership unchanged. Returns True if the user newly occupies the room.
        """
        self.room_subscribers.setdefault(room_id, set()).add(connection_id)
        newly_joined = await self.registry.add_room_connection(room_id, user_id, connection_id)
        logger.info(f"Connection {connection_id} (user {user_id}) joined room {room_id} (new member={newly_joined})")
        await self.bus.emit(MembershipChanged(room_id, user_id, connection_id, joined=True, reason=reason))
        return newly_joined

    async def leave_room(self, room_id: str, user_id: str, connection_id: str, reason: str = "explicit") -> bool:
        """Unsubscribe the connection; the user stops occupying the room with their last connection.

        Returns True if the user no longer occupies the room.
        """
        self._unsubscribe(room_id, connection_id)
        left = await self.registry.remove_room_connection(room_id, user_id, connection_id)
        logger.info(f"Connection {connection_id} (user {user_id}) left room {room_id} "
                    f"(member removed={left}, reason={reason})")
        await self.bus.emit(MembershipChanged(room_id, user_id, connection_id, joined=False, reason=reason))
        return left

    async def _on_membership_changed(self, event: MembershipChanged):
        await self.broadcast_occupancy(event.room_id)

    async def broadcast_occupancy(self, room_id: str) -> int:
        """Recompute the room's occupancy and push it to every subscriber."""
        count = await self.registry.room_size(room_id)
        delivered = await self.broadcast_to_room(room_id, OCCUPANCY_CHANGED, {"roomId": room_id, "count": count})
        logger.debug(f"Occupancy for room {room_id} is {count}, sent to {delivered} connections")
        return count

    async def broadcast_to_room(self, room_id: str, event: str, data: Dict[str, Any],
                                exclude_connection_id: Optional[str] = None) -> int:
        targets = [conn_id for conn_id in self.subscribers_of(room_id) if conn_id != exclude_connection_id]
        return await self._send_many(targets, event, data)

    async def notify_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        """Deliver to every live connection of the user regardless of room."""
        connection_ids = await self.registry.connections_of(user_id)
        delivered = await self._send_many(connection_ids, event, data)
        logger.debug(f"Notified user {user_id} with {event} on {delivered} connections")
        return delivered

    async def send(self, connection_id: str, event: str, data: Dict[str, Any]) -> bool:
        return await self._send_many([connection_id], event, data) == 1

    async def _send_many(self, connection_ids: Iterable[str], event: str, data: Dict[str, Any]) -> int:
        frame = make_frame(event, data)
        targets = [(conn_id, self.transports[conn_id]) for conn_id in connection_ids if conn_id in self.transports]
        if not targets:
            return 0
        results = await asyncio.gather(*(ws.send_text(frame) for _, ws in targets), return_exceptions=True)
        delivered = 0
        for (conn_id, _), result in zip(targets, results):
            if isinstance(result, Exception):
                # The connection's own handler runs disconnect cleanup
                logger.warning(f"Error sending {event} to connection {conn_id}: {result}")
            else:
                delivered += 1
        return delivered
