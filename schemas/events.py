from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional


# Shared records

class Member(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    joinedAt: str

class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    message: str
    timestamp: str
    userId: str


# Client -> server payloads

class JoinRoomPayload(BaseModel):
    roomId: str = Field(min_length=1)
    username: str
    isVideoCall: bool = False

class SendMessagePayload(BaseModel):
    message: str

class OfferPayload(BaseModel):
    targetUserId: str = Field(min_length=1)
    offer: Any

class AnswerPayload(BaseModel):
    targetUserId: str = Field(min_length=1)
    answer: Any

class IceCandidatePayload(BaseModel):
    targetUserId: str = Field(min_length=1)
    candidate: Optional[Any] = None


# Server -> client payloads

class ConnectedEvent(BaseModel):
    userId: str

class RoomSnapshot(BaseModel):
    """Payload of room-joined: the room as the joiner first sees it."""
    roomId: str
    users: list[Member]
    messages: list[ChatMessage]
    isVideoCall: bool

class UserJoinedEvent(BaseModel):
    userId: str
    username: str
    users: list[Member]

class UserLeftEvent(BaseModel):
    userId: str
    username: str
    users: list[Member]

class VideoCallStartedEvent(BaseModel):
    initiatorId: str
    username: str

class VideoCallEndedEvent(BaseModel):
    userId: str

class ErrorEvent(BaseModel):
    event: str
    detail: str
