import asyncio
import itertools

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from backend import RoomRegistry
from peers.coordinator import SessionCoordinator
from peers.errors import MediaAccessDenied
from peers.media import LocalMedia
from signaling import SignalingHub

HOST_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}

_ids = itertools.count(1)


class FakePeerConnection(AsyncIOEventEmitter):
    """Stands in for RTCPeerConnection: same method names, no network."""

    def __init__(self):
        super().__init__()
        self.id = next(_ids)
        self.localDescription = None
        self.remoteDescription = None
        self.tracks = []
        self.candidates = []
        self.log = []
        self.closed = False
        self.connectionState = "new"

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"v=0 offer {self.id}", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=f"v=0 answer {self.id}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.log.append(f"local-{description.type}")

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.log.append(f"remote-{description.type}")

    async def addIceCandidate(self, candidate):
        # applying a candidate with no remote description is an ordering bug
        assert self.remoteDescription is not None, "candidate applied before remote description"
        self.candidates.append(candidate)
        self.log.append("candidate")

    async def close(self):
        self.closed = True
        self.connectionState = "closed"
        self.emit("connectionstatechange")


class ConnectionFactory:
    def __init__(self):
        self.created = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


async def fake_media():
    return LocalMedia(audio=AudioStreamTrack(), video=VideoStreamTrack())


async def denied_media():
    raise MediaAccessDenied("camera busy")


class Recorder:
    """Collects what a coordinator emits."""

    def __init__(self):
        self.sent = []

    async def __call__(self, event, payload):
        self.sent.append((event, payload))

    def events(self, name):
        return [payload for event, payload in self.sent if event == name]


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def connections():
    return ConnectionFactory()


@pytest.fixture
def coordinator(recorder, connections):
    return SessionCoordinator(recorder, connection_factory=connections, media_factory=fake_media)


class Participant:
    def __init__(self, mesh, name):
        self.mesh = mesh
        self.name = name
        self.connection_id = f"{name}-conn"
        self.connections = ConnectionFactory()
        self.coordinator = SessionCoordinator(self.emit, connection_factory=self.connections, media_factory=fake_media)
        self.online = True

    async def emit(self, event, payload):
        if self.online:
            self.mesh.hub.handle(self.connection_id, event, payload)

    async def deliver(self, frame):
        await self.coordinator.handle_event(frame["event"], frame["data"])


class Mesh:
    """Coordinators wired to a real hub, with the relay's writers as transport."""

    def __init__(self):
        self.hub = SignalingHub(RoomRegistry())
        self.participants = {}

    async def add(self, name, room_id="room-1"):
        participant = Participant(self, name)
        self.participants[name] = participant
        self.hub.connect(participant.connection_id, participant.deliver)
        await participant.coordinator.join_room(room_id, name)
        await self.settle()
        return participant

    async def drop(self, participant):
        """Transport vanishes: no end-call, no leave, just gone."""
        participant.online = False
        self.hub.disconnect(participant.connection_id)
        await self.settle()

    async def settle(self, rounds=50):
        for _ in range(rounds):
            await self.hub.relay.flush()
            for participant in self.participants.values():
                await participant.coordinator.drain()
            await asyncio.sleep(0)
            busy = any(link.outstanding for p in self.participants.values() for link in p.coordinator.links.values())
            if self.hub.relay.idle and not busy:
                return
        raise AssertionError("mesh did not settle")


@pytest.fixture
async def mesh():
    mesh = Mesh()
    yield mesh
    for participant in mesh.participants.values():
        await participant.coordinator.close()
    mesh.hub.relay.close_all()
