from pydantic import BaseModel
from typing import Any, Dict, List, Optional


class RoomPresenceResponse(BaseModel):
    room_id: str
    count: int
    members: List[str]
    recent_messages: int

class OnlineUsersResponse(BaseModel):
    count: int
    users: List[str]

class UserPresenceResponse(BaseModel):
    user_id: str
    online: bool
    connections: int

class NotifyRequest(BaseModel):
    type: str
    title: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

class NotifyResponse(BaseModel):
    notification_id: str
    delivered: int

class NotificationsResponse(BaseModel):
    user_id: str
    notifications: List[Dict[str, Any]]

class HealthResponse(BaseModel):
    status: str
    store_available: bool
