import json
from typing import Awaitable, Callable, Dict, Tuple, Type

from pydantic import BaseModel, ValidationError

from errors import UnauthorizedRoomJoin
from logging_config import get_logger
from schemas.events import (
    InboundEvent,
    JoinRoomPayload,
    LeaveRoomPayload,
    MarkNotificationReadPayload,
    RegisterPayload,
    SendMessagePayload,
    TaskUpdatePayload,
    TypingPayload,
    UserStatusPayload,
)
from session import ConnectionSession

logger = get_logger(__name__)


async def on_register(session: ConnectionSession, payload: RegisterPayload):
    if not await session.register(payload.user_id):
        await session.broadcaster.send(session.connection_id, "error",
                                       {"code": "register_failed", "userId": payload.user_id})


async def on_join_room(session: ConnectionSession, payload: JoinRoomPayload):
    if payload.user_id is not None and payload.user_id != session.user_id:
        if not await session.register(payload.user_id):
            await session.broadcaster.send(session.connection_id, "joinRejected",
                                           {"roomId": payload.room_id, "reason": "unknown user"})
            return
    try:
        await session.join_room(payload.room_id)
    except UnauthorizedRoomJoin as e:
        await session.broadcaster.send(session.connection_id, "joinRejected",
                                       {"roomId": e.room_id, "reason": e.reason})


async def on_leave_room(session: ConnectionSession, payload: LeaveRoomPayload):
    await session.leave_room(payload.room_id)


async def on_send_message(session: ConnectionSession, payload: SendMessagePayload):
    await session.send_message(payload.room_id, payload.content, echo=payload.echo, extra=payload.model_extra)


async def on_typing(session: ConnectionSession, payload: TypingPayload):
    await session.typing(payload.room_id, True)


async def on_stop_typing(session: ConnectionSession, payload: TypingPayload):
    await session.typing(payload.room_id, False)


async def on_task_update(session: ConnectionSession, payload: TaskUpdatePayload):
    await session.task_update(payload.room_id, payload.task)


async def on_user_status(session: ConnectionSession, payload: UserStatusPayload):
    await session.user_status(payload.room_id, payload.status)


async def on_mark_notification_read(session: ConnectionSession, payload: MarkNotificationReadPayload):
    updated = await session.mark_notification_read(payload.notification_id)
    await session.broadcaster.send(session.connection_id, "notificationRead",
                                   {"notificationId": payload.notification_id, "updated": updated})


EVENT_HANDLERS: Dict[str, Tuple[Type[BaseModel], Callable[..., Awaitable[None]]]] = {
    "register": (RegisterPayload, on_register),
    "joinRoom": (JoinRoomPayload, on_join_room),
    "leaveRoom": (LeaveRoomPayload, on_leave_room),
    "sendMessage": (SendMessagePayload, on_send_message),
    "typing": (TypingPayload, on_typing),
    "stopTyping": (TypingPayload, on_stop_typing),
    "taskUpdate": (TaskUpdatePayload, on_task_update),
    "userStatus": (UserStatusPayload, on_user_status),
    "markNotificationRead": (MarkNotificationReadPayload, on_mark_notification_read),
}


async def dispatch(session: ConnectionSession, raw: str) -> bool:
    """Handle one inbound frame. Never raises; problems go back to the client as ``error`` events."""
    send = session.broadcaster.send
    try:
        inbound = InboundEvent.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Malformed frame on connection {session.connection_id}: {e}")
        await send(session.connection_id, "error", {"code": "malformed_frame"})
        return False

    entry = EVENT_HANDLERS.get(inbound.event)
    if entry is None:
        logger.warning(f"Unknown event {inbound.event!r} on connection {session.connection_id}")
        await send(session.connection_id, "error", {"code": "unknown_event", "event": inbound.event})
        return False

    payload_model, handler = entry
    try:
        payload = payload_model.model_validate(inbound.data)
    except ValidationError as e:
        logger.debug(f"Invalid {inbound.event} payload on connection {session.connection_id}: {e}")
        await send(session.connection_id, "error",
                   {"code": "invalid_payload", "event": inbound.event, "detail": e.errors(include_url=False)})
        return False

    try:
        await handler(session, payload)
    except Exception as e:
        logger.error(f"Error handling {inbound.event} on connection {session.connection_id}: {e}", exc_info=True)
        await send(session.connection_id, "error", {"code": "internal_error", "event": inbound.event})
        return False
    return True
