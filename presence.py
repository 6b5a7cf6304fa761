from typing import Optional

import event_names
from backend import JoinResult, LeaveResult, RoomRegistry
from relay import SignalingRelay
from schemas.events import JoinRoomPayload, UserJoinedEvent, UserLeftEvent
from logging_config import get_logger

logger = get_logger(__name__)


class PresenceLifecycle:
    """Join, graceful leave and abrupt disconnect for one server process."""

    def __init__(self, registry: RoomRegistry, relay: SignalingRelay):
        self.registry = registry
        self.relay = relay

    def join(self, connection_id: str, payload: JoinRoomPayload) -> JoinResult:
        result = self.registry.join(connection_id, payload.roomId, payload.username, payload.isVideoCall)
        if result.previous:
            self._announce_departure(result.previous)

        self.relay.send_to(connection_id, event_names.ROOM_JOINED, result.snapshot.model_dump())
        self.relay.broadcast_to_room(
            payload.roomId,
            event_names.USER_JOINED,
            UserJoinedEvent(
                userId=connection_id,
                username=result.member.username,
                users=result.snapshot.users,
            ).model_dump(),
            exclude=connection_id,
        )
        logger.info(f"User {connection_id} ({payload.username}) joined room {payload.roomId} "
                    f"({len(result.snapshot.users)} members)")
        return result

    def leave(self, connection_id: str) -> Optional[LeaveResult]:
        result = self.registry.leave(connection_id)
        if result is None:
            return None
        self._announce_departure(result)
        logger.info(f"User {connection_id} left room {result.room_id}")
        return result

    def disconnect(self, connection_id: str) -> Optional[LeaveResult]:
        """Transport dropped: forget the channel, then same as leave.

        Nothing here awaits, so cleanup cannot be cut short by cancellation
        of the connection handler.
        """
        self.relay.unregister(connection_id)
        result = self.registry.leave(connection_id)
        if result is not None:
            self._announce_departure(result)
            logger.info(f"User {connection_id} disconnected from room {result.room_id}")
        else:
            logger.info(f"Connection {connection_id} disconnected before joining a room")
        return result

    def _announce_departure(self, result: LeaveResult):
        # an emptied room is already gone and has nobody to tell
        if not result.remaining:
            return
        self.relay.broadcast_to_room(
            result.room_id,
            event_names.USER_LEFT,
            UserLeftEvent(
                userId=result.member.id,
                username=result.member.username,
                users=result.remaining,
            ).model_dump(),
        )
