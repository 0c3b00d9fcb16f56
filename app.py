import time

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from constants import CORS_ORIGINS, LOG_FILE, LOG_LEVEL, WS_PATH
from lifecycle import lifecycle_manager
from logging_config import get_logger, setup_logging
from message_router import message_router
from routers.rooms import rooms_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

app = FastAPI(title="Signaling Relay")

# Configure CORS; defaults to allowing all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.info(f"{request.method} {request.url.path} {response.status_code} - {elapsed_ms:.1f} ms")
    return response


@app.websocket(WS_PATH)
async def signaling_endpoint(websocket: WebSocket):
    """Signaling channel. Frames are JSON envelopes: {"event": ..., "payload": {...}}."""
    await websocket.accept()
    state = lifecycle_manager.open(websocket)
    message_count = 0

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"WebSocket disconnected for connection {state.id} (code: {message.get('code')})")
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {state.id}")

            # Frames from one connection are handled strictly in arrival order
            await message_router.dispatch(state, raw)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {state.id}")
    except Exception as e:
        logger.error(f"Error on connection {state.id}: {e}", exc_info=True)
    finally:
        await lifecycle_manager.close(state)
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket for connection {state.id}: {e}")
