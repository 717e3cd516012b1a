"""Room domain events and an in-process async event bus."""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Type

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class MembershipChanged:
    """Fired after a connection joined or left a room."""

    room_id: str
    user_id: str
    connection_id: str
    joined: bool
    reason: str = "explicit"  # 'explicit', 'switch' or 'disconnect'


Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """Dispatches events to subscribed coroutines in subscription order.

    A failing handler is logged and does not stop the others, and emit never raises.
    """

    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = {}

    def subscribe(self, event_type: Type, handler: Handler):
        self._handlers.setdefault(event_type, []).append(handler)

    async def emit(self, event) -> int:
        handlers = self._handlers.get(type(event), [])
        delivered = 0
        for handler in handlers:
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Handler {getattr(handler, '__qualname__', handler)} failed for "
                             f"{type(event).__name__}: {e}", exc_info=True)
        return delivered
