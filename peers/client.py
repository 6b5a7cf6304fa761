import asyncio
import json
from typing import Optional

import websockets

from constants import NEGOTIATION_TIMEOUT, SIGNAL_URL
from peers.coordinator import SessionCoordinator
from peers.errors import SignalingError
from logging_config import get_logger

logger = get_logger(__name__)


class SignalingClient:
    """Connects one participant to the signaling server.

    Owns the WebSocket and a SessionCoordinator; every inbound frame is
    handed to the coordinator in arrival order. When the socket goes away,
    for whatever reason, the coordinator is torn down so camera and
    microphone are always released.
    """

    def __init__(self, url: str = SIGNAL_URL, coordinator: Optional[SessionCoordinator] = None):
        self.url = url
        self.coordinator = coordinator or SessionCoordinator(self.emit, negotiation_timeout=NEGOTIATION_TIMEOUT)
        self._ws = None
        self.connected = asyncio.Event()

    async def emit(self, event: str, payload: dict):
        if self._ws is None:
            raise SignalingError(f"cannot send {event}: not connected")
        await self._ws.send(json.dumps({"event": event, "data": payload}))
        logger.debug(f"Sent {event}")

    async def run(self, room_id: str, username: str, is_video_call: bool = False):
        logger.info(f"Connecting to signaling server {self.url}")
        try:
            async with websockets.connect(self.url) as ws:
                self._ws = ws
                self.connected.set()
                await self.coordinator.join_room(room_id, username, is_video_call)
                async for raw in ws:
                    try:
                        frame = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Ignoring non-JSON frame from server")
                        continue
                    await self.coordinator.handle_event(frame.get("event"), frame.get("data"))
        except websockets.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            self._ws = None
            self.connected.clear()
            await self.coordinator.close()

    async def disconnect(self):
        if self._ws is not None:
            await self._ws.close()
