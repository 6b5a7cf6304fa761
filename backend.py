import threading
import uuid
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

from schemas.events import ChatMessage, Member, RoomSnapshot
from schemas.rooms import RoomSummary, RoomUser
from logging_config import get_logger

logger = get_logger(__name__)


class Room:
    def __init__(self, room_id: str, is_video_call: bool = False):
        self.id = room_id
        self.is_video_call = is_video_call
        # connection_id -> Member, insertion ordered
        self.members: Dict[str, Member] = {}
        # append only, never evicted
        self.messages: List[ChatMessage] = []

    def member_list(self) -> List[Member]:
        return list(self.members.values())


class LeaveResult(NamedTuple):
    room_id: str
    member: Member
    remaining: List[Member]


class JoinResult(NamedTuple):
    snapshot: RoomSnapshot
    member: Member
    # set when the connection was moved out of another room by this join
    previous: Optional[LeaveResult] = None


class RoomRegistry:
    """In-memory owner of rooms and their membership.

    Every public method is one critical section over the room and member
    maps. Nothing in here awaits or touches the network, so callers can
    deliver the returned records after the lock is released.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rooms: Dict[str, Room] = {}
        # connection_id -> room_id
        self._member_rooms: Dict[str, str] = {}
        logger.info("Initializing in-memory RoomRegistry")

    def join(self, connection_id: str, room_id: str, display_name: str, wants_video: bool = False) -> JoinResult:
        """Add a connection to a room, creating the room on first join.

        The video flag is only taken from the call that creates the room.
        A repeated join with the same connection id overwrites the earlier
        member entry; if that entry lives in another room it is removed
        from there first.
        """
        with self._lock:
            previous = None
            current_room_id = self._member_rooms.get(connection_id)
            if current_room_id is not None and current_room_id != room_id:
                previous = self._remove_locked(connection_id)
                logger.info(f"Connection {connection_id} moved from room {current_room_id} to {room_id}")

            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id, is_video_call=bool(wants_video))
                self._rooms[room_id] = room
                logger.info(f"Created room {room_id} (video={room.is_video_call})")

            member = Member(id=connection_id, username=display_name, joinedAt=datetime.now().isoformat())
            if connection_id in room.members:
                logger.debug(f"Connection {connection_id} re-joined room {room_id}, overwriting member entry")
            room.members[connection_id] = member
            self._member_rooms[connection_id] = room_id

            snapshot = RoomSnapshot(
                roomId=room_id,
                users=room.member_list(),
                messages=list(room.messages),
                isVideoCall=room.is_video_call,
            )
            logger.debug(f"Room {room_id} now has {len(room.members)} members")
            return JoinResult(snapshot=snapshot, member=member, previous=previous)

    def leave(self, connection_id: str) -> Optional[LeaveResult]:
        """Remove a connection from its room; None when it was never a member."""
        with self._lock:
            if connection_id not in self._member_rooms:
                logger.debug(f"Leave for {connection_id} ignored: not a member of any room")
                return None
            return self._remove_locked(connection_id)

    def _remove_locked(self, connection_id: str) -> LeaveResult:
        room_id = self._member_rooms.pop(connection_id)
        room = self._rooms[room_id]
        member = room.members.pop(connection_id)
        remaining = room.member_list()
        if not remaining:
            del self._rooms[room_id]
            logger.info(f"Room {room_id} is empty, deleted")
        return LeaveResult(room_id=room_id, member=member, remaining=remaining)

    def append_message(self, connection_id: str, text: str) -> Optional[ChatMessage]:
        with self._lock:
            room_id = self._member_rooms.get(connection_id)
            if room_id is None:
                logger.debug(f"Message from {connection_id} dropped: not a member of any room")
                return None
            room = self._rooms[room_id]
            member = room.members[connection_id]
            message = ChatMessage(
                id=str(uuid.uuid4()),
                username=member.username,
                message=text,
                timestamp=datetime.now().isoformat(),
                userId=connection_id,
            )
            room.messages.append(message)
            return message

    def list_rooms(self) -> List[RoomSummary]:
        with self._lock:
            return [
                RoomSummary(
                    id=room.id,
                    userCount=len(room.members),
                    isVideoCall=room.is_video_call,
                    users=[RoomUser(username=m.username, joinedAt=m.joinedAt) for m in room.members.values()],
                )
                for room in self._rooms.values()
            ]

    def get_member(self, connection_id: str) -> Optional[Member]:
        with self._lock:
            room_id = self._member_rooms.get(connection_id)
            if room_id is None:
                return None
            return self._rooms[room_id].members[connection_id]

    def room_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._member_rooms.get(connection_id)

    def members_of(self, room_id: str) -> List[Member]:
        with self._lock:
            room = self._rooms.get(room_id)
            return room.member_list() if room else []

    def messages_of(self, room_id: str) -> List[ChatMessage]:
        with self._lock:
            room = self._rooms.get(room_id)
            return list(room.messages) if room else []

    def __contains__(self, room_id: str) -> bool:
        with self._lock:
            return room_id in self._rooms

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)
