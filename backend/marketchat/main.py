"""Marketchat Backend Application.

This is the main entry point for the marketplace messaging service. Buyers
and sellers exchange one-to-one messages; the REST API persists them and a
WebSocket channel pushes them to whoever has the conversation open.

Modules:
    - conversations: DuckDB conversation store and REST endpoints
    - realtime: WebSocket rooms and message fan-out
    - presence: heartbeat-based "active now" tracking
    - users: participant profile directory
    - auth: bearer token verification
    - client: async client (reconciliation, unread counts, fallback polling)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketchat.config import get_config
from marketchat.conversations.router import router as conversations_router
from marketchat.conversations.store import ConversationStore, get_store
from marketchat.errors import MessagingError
from marketchat.presence import PresenceTracker, set_tracker
from marketchat.presence.router import router as presence_router
from marketchat.realtime.manager import message_router
from marketchat.realtime.router import router as realtime_router
from marketchat.users.router import router as users_router
from marketchat.users.service import UserDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every connection; websockets logs every frame at DEBUG
# and uvicorn.access logs every heartbeat request.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in marketchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = get_store()
    message_router.dedup_cache_size = config.realtime.dedup_cache_size
    set_tracker(PresenceTracker(ttl_seconds=config.presence.ttl_seconds))
    logger.info(
        "Messaging ready: store=%s presence.ttl=%ss publish_on_write=%s",
        store._db_path,
        config.presence.ttl_seconds,
        config.messaging.publish_on_write,
    )

    yield  # Application runs here

    # Shutdown
    message_router.clear()
    ConversationStore.reset_instance()
    UserDirectory.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Marketchat API",
    description="Backend service for buyer/seller messaging on the furniture marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Render domain errors as ``{"error": code, "detail": message}``."""
    status_code = exc.status_code if exc.status_code >= 400 else 500
    if status_code >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=status_code)


# Register all routers
app.include_router(conversations_router)
app.include_router(presence_router)
app.include_router(users_router)
app.include_router(realtime_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "marketchat.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )
