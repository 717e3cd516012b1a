"""One ConnectionSession per live websocket.

State machine::

    ANONYMOUS --register--> REGISTERED --join_room--> IN_ROOM
                                ^                        |
                                +-------leave_room-------+
    any state --disconnect--> TERMINATED

A connection occupies at most one room; joining another room leaves the
current one first. Out-of-order events (leave without a room, join before
register) are logged no-ops because client and server state may briefly
disagree. Durable side effects (last seen, message history) are best-effort.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

from constants import RATE_LIMIT_MESSAGES, RECENT_MESSAGES_REPLAY
from directory import can_join_room
from errors import InvalidRoomTransition, UnauthorizedRoomJoin
from logging_config import get_logger
from services import RealtimeServices

logger = get_logger(__name__)


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    REGISTERED = "registered"
    IN_ROOM = "in_room"
    TERMINATED = "terminated"


class ConnectionSession:

    def __init__(self, connection_id: str, services: RealtimeServices):
        self.connection_id = connection_id
        self.services = services
        self.user_id: Optional[str] = None
        self.current_room: Optional[str] = None
        self._terminated = False

    @property
    def state(self) -> SessionState:
        if self._terminated:
            return SessionState.TERMINATED
        if self.user_id is None:
            return SessionState.ANONYMOUS
        if self.current_room is None:
            return SessionState.REGISTERED
        return SessionState.IN_ROOM

    @property
    def broadcaster(self):
        return self.services.broadcaster

    @property
    def registry(self):
        return self.services.registry

    def _reject(self, action: str) -> bool:
        error = InvalidRoomTransition(self.connection_id, action, self.state.value)
        logger.warning(f"Ignoring event: {error}")
        return False

    async def _best_effort(self, description: str, call: Awaitable):
        try:
            await call
        except Exception as e:
            logger.error(f"{description} failed for connection {self.connection_id}: {e}", exc_info=True)

    async def _touch_last_seen(self):
        if self.services.users is not None and self.user_id is not None:
            await self._best_effort("touch_last_seen", self.services.users.touch_last_seen(self.user_id))

    async def register(self, user_id: str) -> bool:
        if self._terminated:
            return self._reject("register")
        user_id = str(user_id)
        if self.services.users is not None:
            user = await self.services.users.find_by_id(user_id)
            if user is None:
                logger.warning(f"Register rejected for connection {self.connection_id}: unknown user {user_id}")
                return False

        if self.user_id is not None and self.user_id != user_id:
            previous = self.user_id
            logger.info(f"Connection {self.connection_id} re-registering from user {previous} to {user_id}")
            if self.current_room is not None:
                await self._leave_current("switch")
            await self.registry.remove_connection(previous, self.connection_id)
            self.user_id = None

        await self.registry.add_connection(user_id, self.connection_id)
        self.user_id = user_id
        logger.info(f"Connection {self.connection_id} registered as user {user_id}")
        await self._touch_last_seen()
        await self._send_snapshot()
        return True

    async def _send_snapshot(self):
        snapshot: Dict[str, Any] = {"userId": self.user_id, "connectionId": self.connection_id}
        try:
            snapshot["notifications"] = await self.services.notifications.unread(self.user_id)
        except Exception as e:
            logger.error(f"Loading notifications for user {self.user_id} failed: {e}", exc_info=True)
            snapshot["notifications"] = []
        if self.services.summaries is not None:
            try:
                summary = await self.services.summaries.summary_for(self.user_id)
                if summary is not None:
                    snapshot["summary"] = summary
            except Exception as e:
                logger.error(f"Computing summary for user {self.user_id} failed: {e}", exc_info=True)
        await self.broadcaster.send(self.connection_id, "registered", snapshot)

    async def join_room(self, room_id: str) -> bool:
        """Occupy room_id, leaving the current room first.

        Raises UnauthorizedRoomJoin (with nothing changed) when the user may not
        occupy the room.
        """
        if self._terminated or self.user_id is None:
            return self._reject("join a room")
        room_id = str(room_id)
        if self.services.teams is not None and not await can_join_room(self.services.teams, room_id, self.user_id):
            logger.warning(f"Unauthorized join of room {room_id} by user {self.user_id}")
            raise UnauthorizedRoomJoin(room_id, self.user_id)

        if self.current_room is not None and self.current_room != room_id:
            await self._leave_current("switch")

        await self.broadcaster.join_room(room_id, self.user_id, self.connection_id)
        self.current_room = room_id
        await self._touch_last_seen()

        recent = await self.services.message_cache.recent(room_id, RECENT_MESSAGES_REPLAY)
        await self.broadcaster.send(self.connection_id, "recentMessages", {"roomId": room_id, "messages": recent})
        return True

    async def leave_room(self, room_id: Optional[str] = None) -> bool:
        if self._terminated or self.current_room is None:
            return self._reject("leave a room")
        if room_id is not None and str(room_id) != self.current_room:
            return self._reject(f"leave room {room_id}")
        await self._leave_current("explicit")
        await self._touch_last_seen()
        return True

    async def _leave_current(self, reason: str):
        room_id = self.current_room
        self.current_room = None
        await self.broadcaster.leave_room(room_id, self.user_id, self.connection_id, reason=reason)

    async def disconnect(self):
        """Release everything this connection holds. Safe to call more than once."""
        first = not self._terminated
        self._terminated = True
        if self.current_room is not None and self.user_id is not None:
            try:
                await self.broadcaster.leave_room(self.current_room, self.user_id, self.connection_id,
                                                  reason="disconnect")
            except Exception as e:
                logger.error(f"Room cleanup failed for connection {self.connection_id}: {e}", exc_info=True)
        if self.user_id is not None:
            try:
                await self.registry.remove_connection(self.user_id, self.connection_id)
            except Exception as e:
                logger.error(f"Presence cleanup failed for connection {self.connection_id}: {e}", exc_info=True)
        self.broadcaster.detach(self.connection_id)
        if first:
            await self._touch_last_seen()
            logger.info(f"Connection {self.connection_id} terminated (user {self.user_id}, room {self.current_room})")
        else:
            logger.debug(f"Repeated cleanup for connection {self.connection_id}")

    def _in_room(self, action: str, room_id: Optional[str]) -> bool:
        if self._terminated or self.current_room is None:
            return self._reject(action)
        if room_id is not None and str(room_id) != self.current_room:
            return self._reject(f"{action} in room {room_id}")
        return True

    async def send_message(self, room_id: Optional[str], content: str, echo: bool = False,
                           extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        if not self._in_room("send a message", room_id):
            return None
        room_id = self.current_room
        limiter = self.services.rate_limiter
        if not await limiter.check_limit(self.user_id, "message", RATE_LIMIT_MESSAGES):
            remaining = await limiter.remaining(self.user_id, "message", RATE_LIMIT_MESSAGES)
            await self.broadcaster.send(self.connection_id, "error",
                                        {"code": "rate_limited", "message": "Too many messages, slow down",
                                         "limit": RATE_LIMIT_MESSAGES, "remaining": remaining})
            return None

        message = {
            **(extra or {}),
            "id": uuid.uuid4().hex,
            "roomId": room_id,
            "userId": self.user_id,
            "content": content,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await self.services.message_cache.append(room_id, message)
        if self.services.messages is not None:
            await self._best_effort("message persistence", self.services.messages.append(room_id, message))
        exclude = None if echo else self.connection_id
        await self.broadcaster.broadcast_to_room(room_id, "newMessage", message, exclude_connection_id=exclude)
        return message

    async def typing(self, room_id: Optional[str], is_typing: bool = True) -> bool:
        if not self._in_room("type", room_id):
            return False
        event = "userTyping" if is_typing else "userStoppedTyping"
        await self.broadcaster.broadcast_to_room(self.current_room, event,
                                                 {"roomId": self.current_room, "userId": self.user_id},
                                                 exclude_connection_id=self.connection_id)
        return True

    async def task_update(self, room_id: Optional[str], task: Dict[str, Any]) -> bool:
        if not self._in_room("update a task", room_id):
            return False
        await self.broadcaster.broadcast_to_room(self.current_room, "taskUpdated",
                                                 {"roomId": self.current_room, "userId": self.user_id, "task": task},
                                                 exclude_connection_id=self.connection_id)
        return True

    async def user_status(self, room_id: Optional[str], status: str) -> bool:
        if not self._in_room("change status", room_id):
            return False
        await self.broadcaster.broadcast_to_room(self.current_room, "userStatusChanged",
                                                 {"roomId": self.current_room, "userId": self.user_id,
                                                  "status": status},
                                                 exclude_connection_id=self.connection_id)
        return True

    async def mark_notification_read(self, notification_id: str) -> bool:
        if self._terminated or self.user_id is None:
            return self._reject("mark a notification read")
        return await self.services.notifications.mark_read(self.user_id, notification_id)
