import asyncio
import enum
from typing import Any, Callable, List, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription

from peers.errors import InvalidTransition
from logging_config import get_logger

logger = get_logger(__name__)


class LinkState(enum.Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


# IDLE is re-entered only by reset(), when the remote starts a new negotiation
ALLOWED_TRANSITIONS = {
    LinkState.IDLE: {LinkState.OFFERING, LinkState.ANSWERING, LinkState.CLOSED},
    LinkState.OFFERING: {LinkState.CONNECTED, LinkState.IDLE, LinkState.CLOSED},
    LinkState.ANSWERING: {LinkState.CONNECTED, LinkState.IDLE, LinkState.CLOSED},
    LinkState.CONNECTED: {LinkState.IDLE, LinkState.CLOSED},
    LinkState.CLOSED: set(),
}


class PeerLink:
    """Local end of the media session with one remote member.

    Holds the peer connection (created lazily, so an IDLE link can exist just
    to buffer early ICE candidates), the negotiation state, and a mailbox of
    signaling work that one worker task applies in order.

    Attributes:
        remote_id: connection id of the remote member
        connection: RTCPeerConnection (or compatible) once negotiation starts
        outbound: the shared LocalMedia whose tracks were attached, if any
        inbound: remote tracks received on this link
        pending_candidates: ICE candidates held until a remote description exists
    """

    def __init__(self, remote_id: str, on_state: Optional[Callable[["PeerLink", LinkState, LinkState], None]] = None):
        self.remote_id = remote_id
        self.state = LinkState.IDLE
        self.connection: Any = None
        self.outbound = None
        self.inbound: List[Any] = []
        self.pending_candidates: List[RTCIceCandidate] = []
        self.remote_description_set = False
        self.mailbox: asyncio.Queue = asyncio.Queue()
        self.outstanding = 0  # posted and not yet finished
        self.worker: Optional[asyncio.Task] = None
        self.deadline: Optional[asyncio.TimerHandle] = None
        self._on_state = on_state

    def __repr__(self):
        return f"PeerLink({self.remote_id!r}, {self.state.value})"

    @property
    def is_closed(self) -> bool:
        return self.state is LinkState.CLOSED

    @property
    def is_negotiating(self) -> bool:
        return self.state in (LinkState.OFFERING, LinkState.ANSWERING)

    def transition(self, new_state: LinkState) -> LinkState:
        old_state = self.state
        if new_state is old_state:
            return old_state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransition(self.remote_id, old_state, new_state)
        self.state = new_state
        logger.info(f"Link to {self.remote_id}: {old_state.value} -> {new_state.value}")
        if self._on_state:
            self._on_state(self, old_state, new_state)
        return old_state

    async def set_remote_description(self, description: RTCSessionDescription):
        await self.connection.setRemoteDescription(description)
        self.remote_description_set = True
        await self.flush_candidates()

    async def add_candidate(self, candidate: RTCIceCandidate) -> bool:
        """Apply a remote ICE candidate, or hold it until the remote description is set.

        Returns True when the candidate reached the connection.
        """
        if self.connection is None or not self.remote_description_set:
            self.pending_candidates.append(candidate)
            logger.debug(f"Buffered ICE candidate for {self.remote_id} ({len(self.pending_candidates)} pending)")
            return False
        await self.connection.addIceCandidate(candidate)
        return True

    async def flush_candidates(self):
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self.connection.addIceCandidate(candidate)
        if pending:
            logger.debug(f"Applied {len(pending)} buffered ICE candidates for {self.remote_id}")

    def cancel_deadline(self):
        if self.deadline is not None:
            self.deadline.cancel()
            self.deadline = None

    def post(self, action, payload: Any = None):
        self.outstanding += 1
        self.mailbox.put_nowait((action, payload))

    def task_done(self):
        self.outstanding -= 1
        self.mailbox.task_done()

    def discard_mailbox(self):
        while not self.mailbox.empty():
            self.mailbox.get_nowait()
            self.task_done()

    async def reset(self):
        """Drop the current session so the remote can renegotiate from scratch."""
        self.cancel_deadline()
        connection, self.connection = self.connection, None
        self.outbound = None
        self.inbound = []
        self.pending_candidates = []
        self.remote_description_set = False
        self.transition(LinkState.IDLE)
        if connection is not None:
            await connection.close()

    async def close(self):
        """Terminal: release the connection and forget inbound media.

        The state flips before anything is awaited so observers never see a
        half-closed link as live.
        """
        if self.is_closed:
            return
        self.cancel_deadline()
        self.transition(LinkState.CLOSED)
        self.inbound = []
        self.outbound = None
        self.pending_candidates = []
        current = asyncio.current_task()
        if self.worker is not None and self.worker is not current:
            self.worker.cancel()
        self.discard_mailbox()
        connection, self.connection = self.connection, None
        if connection is not None:
            await connection.close()
