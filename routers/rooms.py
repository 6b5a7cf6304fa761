from fastapi import APIRouter, Depends, Request
from schemas.rooms import CreateRoomResponse, HealthResponse, RoomListResponse
from signaling import SignalingHub
import uuid
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api", tags=["rooms"])


def get_hub(request: Request) -> SignalingHub:
    return request.app.state.hub


@rooms_router.get("/rooms", response_model=RoomListResponse)
async def list_rooms(hub: SignalingHub = Depends(get_hub)):
    """
    List live rooms.

    Returns for each room:
    - id: Room identifier
    - userCount: Current number of members
    - isVideoCall: Whether the room was created as a video room
    - users: username and joinedAt of each member
    """
    rooms = hub.registry.list_rooms()
    logger.debug(f"Room list requested: {len(rooms)} rooms")
    return RoomListResponse(rooms=rooms)


@rooms_router.post("/create-room", response_model=CreateRoomResponse)
async def create_room(request: Request):
    # The room itself only comes into being on the first join-room
    room_id = str(uuid.uuid4())
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Generated room id {room_id} for {client_host}")
    return CreateRoomResponse(roomId=room_id)


@rooms_router.get("/health", response_model=HealthResponse)
async def health(hub: SignalingHub = Depends(get_hub)):
    return HealthResponse(status="ok", rooms=len(hub.registry), connections=hub.relay.connection_count)
