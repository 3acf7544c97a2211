"""PharmaLink Chat Backend Application.

This is the main entry point for the PharmaLink real-time chat service.
Patients and healthcare professionals (doctors, pharmacists) exchange
messages in conversations; connected clients receive messages and presence
changes live over a WebSocket, and everyone else catches up over REST.

Modules:
    - chat: Conversations, messages, WebSocket delivery and presence
    - auth: JWT bearer token verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pharmalink.chat.hub import ChatHub
from pharmalink.chat.presence_router import router as presence_router
from pharmalink.chat.router import router as chat_router
from pharmalink.chat.store import ChatStore
from pharmalink.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every request, httpx/httpcore every connection made by
# the test client.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in pharmalink.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    hub = ChatHub.get_instance()
    logger.info(
        f"Chat ready: database={config.database.path}, "
        f"idle_timeout={config.chat.idle_timeout_seconds}s, "
        f"max_connections_per_user={config.chat.max_connections_per_user}"
    )

    yield  # Application runs here

    # Shutdown
    await hub.shutdown()
    ChatHub.reset_instance()
    ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="PharmaLink Chat API",
    description="Real-time chat between patients and healthcare professionals",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)
app.include_router(presence_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
