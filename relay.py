import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from backend import RoomRegistry
from logging_config import get_logger

logger = get_logger(__name__)

Sender = Callable[[dict], Awaitable[None]]


def make_frame(event: str, payload: Any) -> dict:
    return {"event": event, "data": payload}


class ConnectionChannel:
    """Outbound FIFO for one transport connection.

    Frames are queued without waiting and written by a dedicated task, so a
    slow or dying socket never holds up the caller or other connections.
    """

    def __init__(self, connection_id: str, send: Sender):
        self.connection_id = connection_id
        self._send = send
        self._queue: asyncio.Queue = asyncio.Queue()
        self.outstanding = 0  # queued or being written
        self.closed = False
        self._task = asyncio.create_task(self._writer())

    def put(self, frame: dict) -> bool:
        if self.closed:
            return False
        self.outstanding += 1
        self._queue.put_nowait(frame)
        return True

    def _done(self):
        self.outstanding -= 1
        self._queue.task_done()

    async def _writer(self):
        try:
            while True:
                frame = await self._queue.get()
                try:
                    await self._send(frame)
                except Exception as e:
                    # transport is going away; its receive loop runs the cleanup
                    logger.warning(f"Send to connection {self.connection_id} failed, dropping channel: {e}")
                    self.closed = True
                    break
                finally:
                    self._done()
        except asyncio.CancelledError:
            logger.debug(f"Writer for connection {self.connection_id} cancelled")
            raise
        finally:
            self._discard()

    def _discard(self):
        while not self._queue.empty():
            self._queue.get_nowait()
            self._done()

    async def join(self):
        """Wait until every queued frame has been handed to the transport."""
        if not self.closed:
            await self._queue.join()

    def close(self):
        self.closed = True
        self._task.cancel()
        self._discard()


class SignalingRelay:
    """Delivers events to connections, either room-wide or to one target.

    Room membership comes from the injected registry; the relay itself only
    tracks which connections are live. Payloads are never inspected.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self._channels: Dict[str, ConnectionChannel] = {}

    def register(self, connection_id: str, send: Sender) -> ConnectionChannel:
        channel = ConnectionChannel(connection_id, send)
        self._channels[connection_id] = channel
        logger.debug(f"Registered connection {connection_id} (live connections: {len(self._channels)})")
        return channel

    def unregister(self, connection_id: str):
        channel = self._channels.pop(connection_id, None)
        if channel:
            channel.close()
            logger.debug(f"Unregistered connection {connection_id} (live connections: {len(self._channels)})")

    def is_connected(self, connection_id: str) -> bool:
        channel = self._channels.get(connection_id)
        return channel is not None and not channel.closed

    @property
    def connection_count(self) -> int:
        return len(self._channels)

    def send_to(self, connection_id: str, event: str, payload: Any) -> bool:
        channel = self._channels.get(connection_id)
        if channel is None:
            logger.debug(f"Event {event} for {connection_id} dropped: connection not live")
            return False
        return channel.put(make_frame(event, payload))

    def broadcast_to_room(self, room_id: str, event: str, payload: Any, exclude: Optional[str] = None) -> int:
        """Fire-and-forget delivery to every current member but `exclude`."""
        frame = make_frame(event, payload)
        delivered = 0
        for member in self.registry.members_of(room_id):
            if member.id == exclude:
                continue
            channel = self._channels.get(member.id)
            if channel and channel.put(frame):
                delivered += 1
        logger.debug(f"Broadcast {event} to {delivered} members of room {room_id}")
        return delivered

    def route_to_member(self, target_id: str, event: str, payload: dict, from_id: str) -> bool:
        """Deliver a directed message tagged with the sender's id.

        An unreachable target is dropped; the sender is never told.
        """
        tagged = dict(payload)
        tagged["fromUserId"] = from_id
        if not self.send_to(target_id, event, tagged):
            logger.warning(f"{event} from {from_id} dropped: target {target_id} unreachable")
            return False
        logger.debug(f"Routed {event} from {from_id} to {target_id}")
        return True

    @property
    def idle(self) -> bool:
        return all(channel.outstanding == 0 for channel in self._channels.values())

    async def flush(self):
        await asyncio.gather(*(channel.join() for channel in list(self._channels.values())))

    def close_all(self):
        for connection_id in list(self._channels):
            self.unregister(connection_id)
