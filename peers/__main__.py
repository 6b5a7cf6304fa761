import argparse
import asyncio

from constants import LOG_FILE, LOG_LEVEL, SIGNAL_URL
from logging_config import get_logger, setup_logging
from peers.client import SignalingClient
from peers.errors import MediaAccessDenied

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def main(args):
    client = SignalingClient(url=args.url)
    coordinator = client.coordinator
    coordinator.on_message = lambda m: print(f"[{m['username']}] {m['message']}")
    coordinator.on_link_state = lambda remote_id, state: logger.info(f"{remote_id}: {state.value}")

    session = asyncio.create_task(client.run(args.room, args.name, is_video_call=args.call))
    joined = asyncio.create_task(coordinator.joined.wait())
    await asyncio.wait({session, joined}, return_when=asyncio.FIRST_COMPLETED)
    joined.cancel()
    if args.call and coordinator.joined.is_set():
        try:
            await coordinator.start_call()
        except MediaAccessDenied as e:
            logger.error(f"Cannot start call: {e}")
    await session


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Join a room as a headless participant")
    parser.add_argument("room")
    parser.add_argument("name")
    parser.add_argument("--url", default=SIGNAL_URL)
    parser.add_argument("--call", action="store_true", help="start a call once joined")
    try:
        asyncio.run(main(parser.parse_args()))
    except KeyboardInterrupt:
        pass
