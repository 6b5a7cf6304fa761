from pydantic import BaseModel


class RoomUser(BaseModel):
    username: str
    joinedAt: str

class RoomSummary(BaseModel):
    id: str
    userCount: int
    isVideoCall: bool
    users: list[RoomUser]

class RoomListResponse(BaseModel):
    rooms: list[RoomSummary]

class CreateRoomResponse(BaseModel):
    roomId: str

class HealthResponse(BaseModel):
    status: str
    rooms: int
    connections: int
