from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional


class InboundEvent(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def ids_as_strings(cls, value, info):
        # Clients send numeric ids as often as string ones
        if info.field_name.endswith("_id") and isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class RegisterPayload(EventPayload):
    user_id: str = Field(alias="userId", min_length=1)

class JoinRoomPayload(EventPayload):
    room_id: str = Field(alias="roomId", min_length=1)
    user_id: Optional[str] = Field(default=None, alias="userId")

class LeaveRoomPayload(EventPayload):
    room_id: Optional[str] = Field(default=None, alias="roomId")

class SendMessagePayload(EventPayload):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    room_id: Optional[str] = Field(default=None, alias="roomId")
    content: str = Field(min_length=1, max_length=5000)
    echo: bool = False

class TypingPayload(EventPayload):
    room_id: Optional[str] = Field(default=None, alias="roomId")

class TaskUpdatePayload(EventPayload):
    room_id: Optional[str] = Field(default=None, alias="roomId")
    task: Dict[str, Any]

class UserStatusPayload(EventPayload):
    room_id: Optional[str] = Field(default=None, alias="roomId")
    status: str = Field(min_length=1, max_length=64)

class MarkNotificationReadPayload(EventPayload):
    notification_id: str = Field(alias="notificationId", min_length=1)
