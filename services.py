from dataclasses import dataclass, field
from typing import Optional

from backend import SharedStore
from broadcast import RoomBroadcaster
from constants import (
    PRESENCE_TTL_SECONDS,
    RECENT_MESSAGES_SIZE,
    REDIS_ENABLED,
    REDIS_URL,
)
from directory import (
    InMemoryMessageStore,
    InMemoryTeamDirectory,
    MessageStore,
    SummaryProvider,
    TeamDirectory,
    TeamSummaryProvider,
    UserDirectory,
)
from events import EventBus
from logging_config import get_logger
from message_cache import RecentMessageCache
from notifications import NotificationQueue
from presence import PresenceRegistry
from ratelimit import RealtimeRateLimiter

logger = get_logger(__name__)


@dataclass
class RealtimeServices:
    """Everything a connection session needs, constructed once per process."""

    store: SharedStore
    registry: PresenceRegistry
    broadcaster: RoomBroadcaster
    message_cache: RecentMessageCache
    rate_limiter: RealtimeRateLimiter
    notifications: NotificationQueue
    users: Optional[UserDirectory] = None
    teams: Optional[TeamDirectory] = None
    messages: Optional[MessageStore] = None
    summaries: Optional[SummaryProvider] = None
    bus: EventBus = field(default_factory=EventBus)

    async def close(self):
        await self.store.close()


def build_services(store: Optional[SharedStore] = None,
                   users: Optional[UserDirectory] = None,
                   teams: Optional[TeamDirectory] = None,
                   messages: Optional[MessageStore] = None,
                   summaries: Optional[SummaryProvider] = None,
                   recent_size: int = RECENT_MESSAGES_SIZE,
                   presence_ttl: int = PRESENCE_TTL_SECONDS) -> RealtimeServices:
    if store is None:
        store = SharedStore.from_url(REDIS_URL) if REDIS_ENABLED else SharedStore.disabled()
    if summaries is None and isinstance(teams, InMemoryTeamDirectory):
        summaries = TeamSummaryProvider(teams)

    bus = EventBus()
    registry = PresenceRegistry.from_store(store, ttl_seconds=presence_ttl)
    services = RealtimeServices(
        store=store,
        registry=registry,
        broadcaster=RoomBroadcaster(registry, bus),
        message_cache=RecentMessageCache(store, capacity=recent_size),
        rate_limiter=RealtimeRateLimiter(store),
        notifications=NotificationQueue(store),
        users=users,
        teams=teams,
        messages=messages if messages is not None else InMemoryMessageStore(),
        summaries=summaries,
        bus=bus,
    )
    logger.info(f"Realtime services built (shared store configured={store.client is not None})")
    return services
