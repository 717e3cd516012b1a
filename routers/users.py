from fastapi import APIRouter, Depends, Query
from schemas.rooms import (
    NotificationsResponse,
    NotifyRequest,
    NotifyResponse,
    OnlineUsersResponse,
    UserPresenceResponse,
)
from services import RealtimeServices
from routers.rooms import get_services
from logging_config import get_logger

logger = get_logger(__name__)

users_router = APIRouter(prefix="/users", tags=["users"])


@users_router.get("/online", response_model=OnlineUsersResponse)
async def get_online_users(services: RealtimeServices = Depends(get_services)):
    """
    Everyone with at least one live connection.

    Returns:
    - count: Number of online users
    - users: Their user ids, sorted
    """
    online = await services.registry.online_users()
    logger.info(f"Online users: {len(online)}")
    return OnlineUsersResponse(count=len(online), users=sorted(online))


@users_router.get("/{user_id}/presence", response_model=UserPresenceResponse)
async def get_user_presence(user_id: str, services: RealtimeServices = Depends(get_services)):
    connections = await services.registry.connections_of(user_id)
    return UserPresenceResponse(user_id=user_id, online=len(connections) > 0, connections=len(connections))


@users_router.post("/{user_id}/notifications", response_model=NotifyResponse, status_code=201)
async def notify_user(user_id: str, notify_request: NotifyRequest, services: RealtimeServices = Depends(get_services)):
    # Queued first so a user who is offline finds it in the register snapshot
    notification = await services.notifications.queue(user_id, notify_request.model_dump(exclude_none=True))
    delivered = await services.broadcaster.notify_user(user_id, "personalNotification", notification)
    logger.info(f"Notification {notification['id']} for user {user_id} delivered to {delivered} connections")
    return NotifyResponse(notification_id=notification["id"], delivered=delivered)


@users_router.get("/{user_id}/notifications", response_model=NotificationsResponse)
async def list_notifications(
    user_id: str,
    count: int = Query(20, ge=1, le=100),
    services: RealtimeServices = Depends(get_services)
):
    notifications = await services.notifications.list(user_id, count)
    return NotificationsResponse(user_id=user_id, notifications=notifications)
