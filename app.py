from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketState
from routers.rooms import rooms_router
from signaling import SignalingHub
import uuid
import json
from constants import CORS_ORIGINS, LOG_LEVEL, LOG_FILE
from logging_config import get_logger, setup_logging
import event_names

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(hub: SignalingHub = None) -> FastAPI:
    """Build the signaling app around one hub (registry + relay).

    The hub is the single authority for room state in this process; it is
    stored on app.state so routers and the WebSocket endpoint share it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.hub.relay.close_all()
        logger.info("Signaling relay shut down")

    app = FastAPI(lifespan=lifespan)
    app.state.hub = hub or SignalingHub()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """One signaling connection.

        Frames are JSON objects {"event": name, "data": payload}. The
        connection id doubles as the member id and is sent to the client in
        a `connected` frame right after accept.
        """
        hub: SignalingHub = websocket.app.state.hub
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        hub.connect(connection_id, websocket.send_json)

        message_count = 0
        try:
            while True:
                try:
                    data = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"WebSocket disconnected for connection {connection_id}")
                    break
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection_id}")

                try:
                    frame = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning(f"Non-JSON frame from connection {connection_id} ignored")
                    hub.relay.send_to(connection_id, event_names.ERROR, {"event": "", "detail": "frame is not JSON"})
                    continue

                hub.handle_frame(connection_id, frame)
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            # Abrupt or graceful, the member is removed and the room told
            hub.disconnect(connection_id)
            if websocket.client_state != WebSocketState.DISCONNECTED:
                try:
                    await websocket.close()
                except RuntimeError as e:
                    logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
