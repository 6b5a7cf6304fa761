from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError

import event_names
from backend import RoomRegistry
from presence import PresenceLifecycle
from relay import SignalingRelay
from schemas.events import (
    AnswerPayload,
    ConnectedEvent,
    ErrorEvent,
    IceCandidatePayload,
    JoinRoomPayload,
    OfferPayload,
    SendMessagePayload,
    VideoCallEndedEvent,
    VideoCallStartedEvent,
)
from logging_config import get_logger

logger = get_logger(__name__)


class EventValidationError(Exception):
    def __init__(self, event: str, detail: str):
        super().__init__(f"{event}: {detail}")
        self.event = event
        self.detail = detail


class SignalingHub:
    """Turns inbound client events into registry updates and relay deliveries."""

    def __init__(self, registry: RoomRegistry = None, relay: SignalingRelay = None):
        self.registry = registry or RoomRegistry()
        self.relay = relay or SignalingRelay(self.registry)
        self.presence = PresenceLifecycle(self.registry, self.relay)
        self._handlers: Dict[str, Callable[[str, Any], None]] = {
            event_names.JOIN_ROOM: self.on_join_room,
            event_names.LEAVE_ROOM: self.on_leave_room,
            event_names.SEND_MESSAGE: self.on_send_message,
            event_names.WEBRTC_OFFER: self.on_offer,
            event_names.WEBRTC_ANSWER: self.on_answer,
            event_names.WEBRTC_ICE_CANDIDATE: self.on_ice_candidate,
            event_names.START_VIDEO_CALL: self.on_start_video_call,
            event_names.END_VIDEO_CALL: self.on_end_video_call,
        }

    def connect(self, connection_id: str, send: Callable[[dict], Awaitable[None]]):
        self.relay.register(connection_id, send)
        self.relay.send_to(connection_id, event_names.CONNECTED, ConnectedEvent(userId=connection_id).model_dump())
        logger.info(f"Connection {connection_id} opened")

    def disconnect(self, connection_id: str):
        self.presence.disconnect(connection_id)

    def handle(self, connection_id: str, event: str, data: Any):
        """Dispatch one inbound event.

        Handlers only mutate the registry and enqueue frames, so events from
        one connection are fully applied in the order they arrive.
        """
        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise EventValidationError(event, "unknown event")
            handler(connection_id, data)
        except EventValidationError as e:
            logger.warning(f"Rejected {e.event} from {connection_id}: {e.detail}")
            self.relay.send_to(connection_id, event_names.ERROR, ErrorEvent(event=e.event, detail=e.detail).model_dump())

    def handle_frame(self, connection_id: str, frame: Any):
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.warning(f"Malformed frame from {connection_id}")
            self.relay.send_to(connection_id, event_names.ERROR,
                               ErrorEvent(event="", detail="malformed frame").model_dump())
            return
        self.handle(connection_id, frame["event"], frame.get("data"))

    @staticmethod
    def _parse(model, event: str, data: Any):
        try:
            return model.model_validate(data if data is not None else {})
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            raise EventValidationError(event, f"{field}: {first.get('msg', 'invalid')}" if field else first.get("msg", "invalid"))

    def on_join_room(self, connection_id: str, data: Any):
        payload = self._parse(JoinRoomPayload, event_names.JOIN_ROOM, data)
        self.presence.join(connection_id, payload)

    def on_leave_room(self, connection_id: str, data: Any):
        self.presence.leave(connection_id)

    def on_send_message(self, connection_id: str, data: Any):
        payload = self._parse(SendMessagePayload, event_names.SEND_MESSAGE, data)
        room_id = self.registry.room_of(connection_id)
        message = self.registry.append_message(connection_id, payload.message)
        if message is None:
            return
        self.relay.broadcast_to_room(room_id, event_names.NEW_MESSAGE, message.model_dump())
        logger.debug(f"Message {message.id} from {connection_id} in room {room_id}")

    def _route(self, connection_id: str, target_id: str, event: str, body: dict):
        if target_id == connection_id:
            logger.debug(f"{event} from {connection_id} addressed to itself, dropped")
            return
        self.relay.route_to_member(target_id, event, body, connection_id)

    def on_offer(self, connection_id: str, data: Any):
        payload = self._parse(OfferPayload, event_names.WEBRTC_OFFER, data)
        self._route(connection_id, payload.targetUserId, event_names.WEBRTC_OFFER, {"offer": payload.offer})

    def on_answer(self, connection_id: str, data: Any):
        payload = self._parse(AnswerPayload, event_names.WEBRTC_ANSWER, data)
        self._route(connection_id, payload.targetUserId, event_names.WEBRTC_ANSWER, {"answer": payload.answer})

    def on_ice_candidate(self, connection_id: str, data: Any):
        payload = self._parse(IceCandidatePayload, event_names.WEBRTC_ICE_CANDIDATE, data)
        self._route(connection_id, payload.targetUserId, event_names.WEBRTC_ICE_CANDIDATE,
                    {"candidate": payload.candidate})

    def on_start_video_call(self, connection_id: str, data: Any):
        member = self.registry.get_member(connection_id)
        room_id = self.registry.room_of(connection_id)
        if member is None or room_id is None:
            logger.debug(f"start-video-call from {connection_id} ignored: not a member")
            return
        self.relay.broadcast_to_room(
            room_id,
            event_names.VIDEO_CALL_STARTED,
            VideoCallStartedEvent(initiatorId=connection_id, username=member.username).model_dump(),
            exclude=connection_id,
        )
        logger.info(f"User {connection_id} started a call in room {room_id}")

    def on_end_video_call(self, connection_id: str, data: Any):
        room_id = self.registry.room_of(connection_id)
        if room_id is None:
            logger.debug(f"end-video-call from {connection_id} ignored: not a member")
            return
        self.relay.broadcast_to_room(
            room_id,
            event_names.VIDEO_CALL_ENDED,
            VideoCallEndedEvent(userId=connection_id).model_dump(),
            exclude=connection_id,
        )
        logger.info(f"User {connection_id} ended their call in room {room_id}")
