from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import RedisBackend, redis_backend
from constants import CORS_ORIGINS, REQUIRE_AUTH, TYPING_EXPIRY_MS
from errors import ChatError
from gateway import ConnectionGateway
from logging_config import get_logger, setup_logging
from room_session import SessionManager
from routers.rooms import rooms_router
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(
    backend: Optional[RedisBackend] = None,
    typing_expiry: float = TYPING_EXPIRY_MS / 1000,
    require_auth: bool = REQUIRE_AUTH,
) -> FastAPI:
    backend = backend if backend is not None else redis_backend
    sessions = SessionManager(backend, typing_expiry=typing_expiry)
    gateway = ConnectionGateway(sessions, backend, require_auth=require_auth)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            backend.ping()
            logger.info("Redis connection verified")
        except ChatError as e:
            logger.error(f"Redis is not reachable at startup: {e.message}")
            raise
        yield
        sessions.shutdown()
        logger.info("Chat server shut down")

    app = FastAPI(lifespan=lifespan)
    app.state.backend = backend
    app.state.sessions = sessions
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "code": exc.code})

    app.include_router(rooms_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "active_rooms": len(sessions.active_rooms())}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Realtime room events. Authenticate with ?token=, a bearer header or the token cookie."""
        await gateway.handle(websocket)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
