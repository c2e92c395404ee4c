from fastapi import APIRouter, Depends, Query, Request

from backend import RedisBackend
from constants import HISTORY_LIMIT
from identity import Identity, get_current_identity
from logging_config import get_logger
from schemas.rooms import CreateRoomRequest, MessageHistoryResponse, RoomListResponse, RoomResponse

logger = get_logger(__name__)

# Every room route needs an authenticated user
rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"], dependencies=[Depends(get_current_identity)])


def get_backend(request: Request) -> RedisBackend:
    return request.app.state.backend


@rooms_router.post("/", status_code=201, response_model=RoomResponse)
async def create_room(
    room: CreateRoomRequest,
    identity: Identity = Depends(get_current_identity),
    backend: RedisBackend = Depends(get_backend),
):
    logger.info(f"Room creation request from {identity.username}, name: {room.name}")
    created = backend.create_room(room.name, room.description, identity.user_id)
    return RoomResponse(message="Room created.", room=created)


@rooms_router.get("/", response_model=RoomListResponse)
async def list_rooms(backend: RedisBackend = Depends(get_backend)):
    rooms = backend.list_rooms()
    logger.debug(f"Listing {len(rooms)} rooms")
    return RoomListResponse(rooms=rooms)


@rooms_router.get("/{room_id}", response_model=RoomResponse)
async def get_room_details(room_id: str, backend: RedisBackend = Depends(get_backend)):
    """
    Get a single room with its creator and members resolved to usernames.

    Members here are the persisted membership. Who is online right now is
    only known on the realtime side through the roomUsers event.
    """
    return RoomResponse(room=backend.get_room(room_id))


@rooms_router.post("/{room_id}/join", response_model=RoomResponse)
async def join_room(
    room_id: str,
    identity: Identity = Depends(get_current_identity),
    backend: RedisBackend = Depends(get_backend),
):
    logger.info(f"Join room request for {room_id} from {identity.username}")
    room = backend.add_member(room_id, identity.user_id)
    return RoomResponse(message="Joined room.", room=room)


@rooms_router.post("/{room_id}/leave", response_model=RoomResponse)
async def leave_room(
    room_id: str,
    identity: Identity = Depends(get_current_identity),
    backend: RedisBackend = Depends(get_backend),
):
    logger.info(f"Leave room request for {room_id} from {identity.username}")
    room = backend.remove_member(room_id, identity.user_id)
    return RoomResponse(message="Left room.", room=room)


@rooms_router.get("/{room_id}/messages", response_model=MessageHistoryResponse)
async def get_room_messages(
    room_id: str,
    limit: int = Query(HISTORY_LIMIT, ge=1, le=HISTORY_LIMIT),
    backend: RedisBackend = Depends(get_backend),
):
    # Raises NotFound for unknown rooms instead of returning an empty history
    backend.get_room(room_id)
    return MessageHistoryResponse(roomId=room_id, messages=backend.list_messages(room_id, limit=limit))
