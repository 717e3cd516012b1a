from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from routers.users import users_router
from schemas.rooms import HealthResponse
from services import RealtimeServices, build_services
from session import ConnectionSession
from handlers import dispatch
from broadcast import make_frame
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional
from constants import LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(services: Optional[RealtimeServices] = None) -> FastAPI:
    """Build the application. Services are created at startup unless injected."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        available = await app.state.services.store.probe()
        if available:
            logger.info("Shared store reachable, presence is shared")
        else:
            logger.warning("Shared store unreachable at startup, presence falls back to this process")
        # Keeps TTLs of live presence entries from running out
        refresher = asyncio.create_task(app.state.services.registry.refresh_forever())
        yield
        refresher.cancel()
        try:
            await refresher
        except asyncio.CancelledError:
            pass
        await app.state.services.close()
        logger.info("Realtime services closed")

    app = FastAPI(lifespan=lifespan)
    app.state.services = services

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(users_router)

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        return HealthResponse(status="ok", store_available=request.app.state.services.store.is_available())

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Realtime endpoint. Frames are JSON objects ``{"event": ..., "data": {...}}``."""
        services: RealtimeServices = websocket.app.state.services
        connection_id = str(uuid.uuid4())
        await websocket.accept()
        logger.info(f"WebSocket connection {connection_id} accepted from "
                    f"{websocket.client.host if websocket.client else 'unknown'}")

        session = ConnectionSession(connection_id, services)
        services.broadcaster.attach(connection_id, websocket)
        try:
            await websocket.send_text(make_frame("connected", {
                "connectionId": connection_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }))

            message_count = 0
            while True:
                try:
                    data = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                    break
                message_count += 1
                logger.debug(f"Received frame #{message_count} from connection {connection_id}")
                await dispatch(session, data)
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            # Cleanup runs to completion even if this handler is cancelled
            await asyncio.shield(session.disconnect())
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
