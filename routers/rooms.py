from fastapi import APIRouter, Depends, Request
from schemas.rooms import RoomPresenceResponse
from services import RealtimeServices
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_services(request: Request) -> RealtimeServices:
    return request.app.state.services


@rooms_router.get("/{room_id}/presence", response_model=RoomPresenceResponse)
async def get_room_presence(room_id: str, services: RealtimeServices = Depends(get_services)):
    """
    Current occupancy of a team room.

    Returns:
    - room_id: Room (team) identifier
    - count: Number of distinct users occupying the room
    - members: Their user ids
    - recent_messages: Messages available for replay on join
    """
    members = await services.registry.room_members(room_id)
    recent = await services.message_cache.recent(room_id, services.message_cache.capacity)
    logger.info(f"Room presence for {room_id}: {len(members)} users")
    return RoomPresenceResponse(
        room_id=room_id,
        count=len(members),
        members=sorted(members),
        recent_messages=len(recent)
    )


@rooms_router.delete("/{room_id}/messages", status_code=204)
async def clear_room_messages(room_id: str, services: RealtimeServices = Depends(get_services)):
    """Drop the replay buffer of a room, e.g. when the team is deleted."""
    await services.message_cache.clear(room_id)
