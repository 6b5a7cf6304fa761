"""Client-side coordination of a full-mesh call.

One SessionCoordinator runs per local participant. It consumes the room
and signaling events pushed by the server and keeps one PeerLink per
remote member:

    IDLE -> OFFERING -> CONNECTED -> CLOSED     (we called them)
    IDLE -> ANSWERING -> CONNECTED -> CLOSED    (they called us)

Signaling work for a link goes through that link's mailbox and is applied
by the link's own worker task, so links negotiate independently and events
for one remote are applied in arrival order.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

import event_names
from constants import ICE_SERVERS
from peers.codec import candidate_from_dict, candidate_to_dict, description_from_dict, description_to_dict
from peers.errors import MediaAccessDenied
from peers.link import LinkState, PeerLink
from peers.media import LocalMedia, acquire_local_media
from logging_config import get_logger

logger = get_logger(__name__)

Send = Callable[[str, dict], Awaitable[None]]


def default_connection_factory() -> RTCPeerConnection:
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ICE_SERVERS])
    return RTCPeerConnection(configuration=config)


class SessionCoordinator:
    """Drives the PeerLinks of one participant.

    Args:
        send: coroutine function (event, payload) that emits to the server
        connection_factory: builds a new RTCPeerConnection-like object
        media_factory: coroutine function returning the LocalMedia to share
        negotiation_timeout: seconds a link may stay OFFERING/ANSWERING
            before it is closed; None waits forever
    """

    def __init__(
        self,
        send: Send,
        connection_factory: Callable[[], Any] = default_connection_factory,
        media_factory: Callable[[], Awaitable[LocalMedia]] = acquire_local_media,
        negotiation_timeout: Optional[float] = None,
    ):
        self._send = send
        self.connection_factory = connection_factory
        self.media_factory = media_factory
        self.negotiation_timeout = negotiation_timeout

        self.self_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.is_video_room = False
        self.members: Dict[str, dict] = {}  # member id -> {id, username, joinedAt}
        self.messages: List[dict] = []
        self.links: Dict[str, PeerLink] = {}
        self.local_media: Optional[LocalMedia] = None
        self.call_active = False
        # members who announced a call we have not seen end
        self.remote_calls: set = set()
        # remotes whose link we closed; their late candidates are stale
        self._retired: set = set()
        self._closing: set = set()  # close_link tasks started by deadlines
        self.joined = asyncio.Event()

        # observers
        self.on_link_state: Optional[Callable[[str, LinkState], None]] = None
        self.on_remote_track: Optional[Callable[[str, Any], None]] = None
        self.on_message: Optional[Callable[[dict], None]] = None
        self.on_members: Optional[Callable[[Dict[str, dict]], None]] = None

        self._handlers = {
            event_names.CONNECTED: self._on_connected,
            event_names.ROOM_JOINED: self._on_room_joined,
            event_names.USER_JOINED: self._on_user_joined,
            event_names.USER_LEFT: self._on_user_left,
            event_names.NEW_MESSAGE: self._on_new_message,
            event_names.VIDEO_CALL_STARTED: self._on_video_call_started,
            event_names.VIDEO_CALL_ENDED: self._on_video_call_ended,
            event_names.WEBRTC_OFFER: self._on_offer,
            event_names.WEBRTC_ANSWER: self._on_answer,
            event_names.WEBRTC_ICE_CANDIDATE: self._on_ice_candidate,
            event_names.ERROR: self._on_error,
        }

    # ---- public actions ----

    def link_state(self, remote_id: str) -> LinkState:
        link = self.links.get(remote_id)
        return link.state if link else LinkState.IDLE

    async def start_call(self):
        """Acquire camera/microphone and offer to every known member.

        MediaAccessDenied propagates to the caller and no link is created.
        """
        if self.call_active:
            logger.debug("start_call ignored: call already active")
            return
        try:
            self.local_media = await self.media_factory()
        except MediaAccessDenied:
            logger.warning("Call not started: media access denied")
            raise
        self.call_active = True
        logger.info(f"Starting call in room {self.room_id} with {len(self.remote_member_ids())} members")
        await self._send(event_names.START_VIDEO_CALL, {})
        for remote_id in self.remote_member_ids():
            self._offer_to(remote_id)

    async def end_call(self, notify: bool = True):
        """Close every link and release local media, whatever their state."""
        was_active = self.call_active
        self.call_active = False
        links = list(self.links.values())
        self.links.clear()
        self._retired.update(link.remote_id for link in links)
        for link in links:
            await self._close(link)
        if self.local_media is not None:
            self.local_media.release()
            self.local_media = None
        if was_active:
            logger.info(f"Call ended in room {self.room_id}")
            if notify:
                await self._send(event_names.END_VIDEO_CALL, {})

    async def join_room(self, room_id: str, username: str, is_video_call: bool = False):
        await self._send(event_names.JOIN_ROOM, {"roomId": room_id, "username": username, "isVideoCall": is_video_call})

    async def leave_room(self):
        await self.end_call()
        await self._send(event_names.LEAVE_ROOM, {})
        self._reset_room()

    async def send_message(self, text: str):
        await self._send(event_names.SEND_MESSAGE, {"message": text})

    async def close(self):
        """Transport lost: tear everything down without emitting."""
        await self.end_call(notify=False)
        self._reset_room()

    def toggle_mute(self) -> bool:
        """Flip the shared microphone track; returns True when muted."""
        if self.local_media is None:
            return True
        return not self.local_media.toggle_audio()

    def toggle_video(self) -> bool:
        """Flip the shared camera track; returns True when video is on."""
        if self.local_media is None:
            return False
        return self.local_media.toggle_video()

    def remote_member_ids(self) -> List[str]:
        return [member_id for member_id in self.members if member_id != self.self_id]

    async def drain(self):
        """Wait until every link mailbox has been fully processed."""
        while True:
            busy = [link for link in self.links.values() if link.outstanding]
            if not busy:
                return
            await asyncio.gather(*(link.mailbox.join() for link in busy))

    # ---- inbound events ----

    async def handle_event(self, event: str, data: Any):
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring event {event}")
            return
        await handler(data or {})

    async def _on_connected(self, data: dict):
        self.self_id = data["userId"]
        logger.info(f"Connected to signaling server as {self.self_id}")

    async def _on_room_joined(self, data: dict):
        self.room_id = data["roomId"]
        self.is_video_room = bool(data.get("isVideoCall"))
        self.messages = list(data.get("messages", []))
        self._set_members(data.get("users", []))
        self.joined.set()
        logger.info(f"Joined room {self.room_id} with {len(self.members)} members")

    async def _on_user_joined(self, data: dict):
        self._set_members(data.get("users", []))
        remote_id = data["userId"]
        if self.call_active and remote_id != self.self_id:
            # only the newcomer is offered; established links are left alone
            self._offer_to(remote_id)

    async def _on_user_left(self, data: dict):
        self._set_members(data.get("users", []))
        self.remote_calls.discard(data["userId"])
        await self.close_link(data["userId"])

    async def _on_new_message(self, data: dict):
        self.messages.append(data)
        if self.on_message:
            self.on_message(data)

    async def _on_video_call_started(self, data: dict):
        # the initiator offers to us; nothing to send back
        self.remote_calls.add(data["initiatorId"])
        self._retired.discard(data["initiatorId"])
        logger.info(f"{data.get('username')} started a call")

    async def _on_video_call_ended(self, data: dict):
        self.remote_calls.discard(data["userId"])
        await self.close_link(data["userId"])

    async def _on_offer(self, data: dict):
        self._retired.discard(data["fromUserId"])
        self._enqueue(data["fromUserId"], self._accept_offer, data["offer"])

    async def _on_answer(self, data: dict):
        remote_id = data["fromUserId"]
        if remote_id not in self.links:
            logger.warning(f"Answer from {remote_id} ignored: no link")
            return
        self._enqueue(remote_id, self._accept_answer, data["answer"])

    async def _on_ice_candidate(self, data: dict):
        remote_id = data["fromUserId"]
        if remote_id not in self.links and not self._expects_offer_from(remote_id):
            logger.debug(f"ICE candidate from {remote_id} dropped: no session with them")
            return
        self._enqueue(remote_id, self._accept_candidate, data.get("candidate"))

    def _expects_offer_from(self, remote_id: str) -> bool:
        """A member in a call of their own may trickle ahead of their offer."""
        return (remote_id in self.members and remote_id != self.self_id
                and remote_id in self.remote_calls and remote_id not in self._retired)

    async def _on_error(self, data: dict):
        logger.warning(f"Server rejected {data.get('event')}: {data.get('detail')}")

    def _set_members(self, users: List[dict]):
        self.members = {user["id"]: user for user in users}
        if self.on_members:
            self.on_members(self.members)

    def _reset_room(self):
        self.room_id = None
        self.members = {}
        self.messages = []
        self.remote_calls.clear()
        self._retired.clear()
        self.joined.clear()

    # ---- link plumbing ----

    def _link(self, remote_id: str) -> PeerLink:
        link = self.links.get(remote_id)
        if link is None:
            link = PeerLink(remote_id, on_state=self._state_changed)
            link.worker = asyncio.create_task(self._link_worker(link))
            self.links[remote_id] = link
        return link

    def _enqueue(self, remote_id: str, action, payload: Any = None):
        self._link(remote_id).post(action, payload)

    def _offer_to(self, remote_id: str):
        self._retired.discard(remote_id)
        self._enqueue(remote_id, self._make_offer)

    async def _link_worker(self, link: PeerLink):
        while not link.is_closed:
            action, payload = await link.mailbox.get()
            try:
                await action(link, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Negotiation with {link.remote_id} failed: {e}", exc_info=True)
                if self.links.get(link.remote_id) is link:
                    del self.links[link.remote_id]
                await self._close(link)
            finally:
                link.task_done()

    def _state_changed(self, link: PeerLink, old_state: LinkState, new_state: LinkState):
        if new_state in (LinkState.OFFERING, LinkState.ANSWERING):
            self._arm_deadline(link)
        elif new_state in (LinkState.CONNECTED, LinkState.CLOSED):
            link.cancel_deadline()
        if self.on_link_state:
            self.on_link_state(link.remote_id, new_state)

    def _arm_deadline(self, link: PeerLink):
        if self.negotiation_timeout is None:
            return
        link.cancel_deadline()
        loop = asyncio.get_running_loop()
        link.deadline = loop.call_later(self.negotiation_timeout, self._negotiation_expired, link)

    def _negotiation_expired(self, link: PeerLink):
        link.deadline = None
        if link.is_negotiating and self.links.get(link.remote_id) is link:
            logger.warning(f"Negotiation with {link.remote_id} timed out in state {link.state.value}")
            task = asyncio.ensure_future(self.close_link(link.remote_id))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    def _open_connection(self, link: PeerLink):
        """Create the peer connection, wire its events, attach local tracks."""
        pc = self.connection_factory()
        link.connection = pc
        remote_id = link.remote_id

        @pc.on("track")
        def on_track(track):
            if link.connection is not pc:
                return
            link.inbound.append(track)
            logger.info(f"Received {track.kind} track from {remote_id}")
            if self.on_remote_track:
                self.on_remote_track(remote_id, track)

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            if candidate is None or link.connection is not pc:
                return
            await self._send(event_names.WEBRTC_ICE_CANDIDATE,
                             {"targetUserId": remote_id, "candidate": candidate_to_dict(candidate)})

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"Connection to {remote_id} is {pc.connectionState}")
            if pc.connectionState in ("failed", "closed") and link.connection is pc and self.links.get(remote_id) is link:
                await self.close_link(remote_id)

        if self.local_media is not None:
            for track in self.local_media.subscribe():
                pc.addTrack(track)
            link.outbound = self.local_media
        return pc

    async def close_link(self, remote_id: str):
        link = self.links.pop(remote_id, None)
        if link is not None:
            self._retired.add(remote_id)
            await self._close(link)

    async def _close(self, link: PeerLink):
        try:
            await link.close()
        except Exception as e:
            # the link is already CLOSED and forgotten; only the release failed
            logger.error(f"Error closing connection to {link.remote_id}: {e}", exc_info=True)

    # ---- negotiation steps, run by the link worker ----

    async def _make_offer(self, link: PeerLink, _payload=None):
        if link.state is not LinkState.IDLE:
            if link.outbound is not None or self.local_media is None:
                logger.debug(f"Offer to {link.remote_id} skipped: link is {link.state.value}")
                return
            # live link without our media: renegotiate so they receive it
            await link.reset()
        # the remote has not seen this offer yet, so nothing buffered belongs to it
        link.pending_candidates = []
        self._open_connection(link)
        link.transition(LinkState.OFFERING)
        offer = await link.connection.createOffer()
        await link.connection.setLocalDescription(offer)
        await self._send(event_names.WEBRTC_OFFER,
                         {"targetUserId": link.remote_id, "offer": description_to_dict(link.connection.localDescription)})

    async def _accept_offer(self, link: PeerLink, offer: dict):
        if link.state is LinkState.OFFERING and not self._yields_to(link.remote_id):
            # both sides offered; the other side answers ours
            logger.info(f"Offer collision with {link.remote_id}: keeping our offer")
            return
        if link.state is not LinkState.IDLE:
            # candidates queued ahead of this offer belong to the old session
            logger.info(f"Fresh offer from {link.remote_id} while {link.state.value}, renegotiating")
            await link.reset()
        self._open_connection(link)
        link.transition(LinkState.ANSWERING)
        await link.set_remote_description(description_from_dict(offer))
        answer = await link.connection.createAnswer()
        await link.connection.setLocalDescription(answer)
        await self._send(event_names.WEBRTC_ANSWER,
                         {"targetUserId": link.remote_id, "answer": description_to_dict(link.connection.localDescription)})
        link.transition(LinkState.CONNECTED)

    async def _accept_answer(self, link: PeerLink, answer: dict):
        if link.state is not LinkState.OFFERING:
            logger.warning(f"Answer from {link.remote_id} ignored: link is {link.state.value}")
            return
        await link.set_remote_description(description_from_dict(answer))
        link.transition(LinkState.CONNECTED)

    async def _accept_candidate(self, link: PeerLink, data: Optional[dict]):
        # a bad candidate costs one network path, never the link
        try:
            candidate = candidate_from_dict(data)
            if candidate is None:
                logger.debug(f"End of candidates from {link.remote_id}")
                return
            await link.add_candidate(candidate)
        except (AssertionError, ValueError, IndexError) as e:
            logger.warning(f"Unusable ICE candidate from {link.remote_id} dropped: {e!r}")

    def _yields_to(self, remote_id: str) -> bool:
        """On an offer collision the side with the larger id gives way."""
        return (self.self_id or "") > remote_id
