"""Chatline Backend Application.

This is the main entry point for the Chatline backend service: realtime
rooms, direct messages, typing indicators and presence over WebSocket, plus
the HTTP surface for attachments and history.

Modules:
    - chat: WebSocket sessions, fan-out, presence and history
    - files: Attachment upload and download
    - auth: Bearer-token verification

Every shared service (stores, registries, presence) is created in the
lifespan and kept on ``app.state``; nothing is a module-level singleton, so
each app instance (and each test client) gets its own state.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatline import __version__
from chatline.auth.service import TokenVerifier
from chatline.chat.broadcast import Broadcaster
from chatline.chat.events import EventDispatcher
from chatline.chat.gateway import SessionGateway
from chatline.chat.history import HistoryService
from chatline.chat.manager import ConnectionManager
from chatline.chat.presence import PresenceTable
from chatline.chat.router import router as chat_router
from chatline.chat.store import MessageStore
from chatline.config import AppConfig, get_config
from chatline.files.router import router as files_router
from chatline.files.service import BlobStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "duckdb",
    "multipart",
    "python_multipart",
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _apply_log_level(config: AppConfig) -> None:
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared services on startup and close the stores on shutdown."""
    config: AppConfig = app.state.config
    _apply_log_level(config)

    store = MessageStore(config.storage.messages_db_path())
    blob_store = BlobStore(
        upload_dir=config.storage.upload_path(),
        db_path=config.storage.blobs_db_path(),
        max_size_bytes=config.uploads.max_file_size_bytes,
    )
    manager = ConnectionManager()
    presence = PresenceTable()
    broadcaster = Broadcaster(manager, presence, store, blob_store)
    history = HistoryService(store, config.history)
    verifier = TokenVerifier(
        config.secrets.jwt.secret_key,
        config.auth.algorithm,
        expire_minutes=config.auth.token_expire_minutes,
    )

    app.state.store = store
    app.state.blob_store = blob_store
    app.state.manager = manager
    app.state.presence = presence
    app.state.broadcaster = broadcaster
    app.state.history = history
    app.state.verifier = verifier
    app.state.gateway = SessionGateway(verifier, manager, presence, broadcaster, config.auth)
    app.state.dispatcher = EventDispatcher(broadcaster, history)

    logger.info(
        f"Chatline ready on http://{config.server.host}:{config.server.port} "
        f"(data_dir={config.storage.data_dir})"
    )

    yield  # Application runs here

    # Shutdown
    store.close()
    blob_store.close()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create a FastAPI application bound to *config* (default: loaded config)."""
    app = FastAPI(
        title="Chatline API",
        description="Realtime chat backend: rooms, direct messages, presence and attachments",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config or get_config()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app.state.config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register all routers
    app.include_router(chat_router)
    app.include_router(files_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
