"""roomsync local API.

Entry point for the presentation layer. The engine keeps the open room's
feed and typing presence in sync and tracks unread counts for every room;
this app exposes it over HTTP and a WebSocket.

Modules:
    - chat: feed reconciliation, typing presence, room sessions, WebSocket
    - unread: watermark store, unread counter, REST endpoints
    - datasource: external data service interface and in-memory backend
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from roomsync.chat.router import router as chat_router
from roomsync.config import get_config
from roomsync.engine import SyncEngine, get_engine, set_engine
from roomsync.unread.router import router as unread_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

for _noisy in ("duckdb", "httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Tests may install an engine before startup.
    engine = get_engine()
    owns_engine = engine is None
    if owns_engine:
        engine = SyncEngine(config)
        set_engine(engine)
    await engine.start()

    yield  # Application runs here

    if owns_engine:
        await engine.stop()
        set_engine(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="roomsync API",
    description="Realtime feed synchronization and unread tracking",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)
app.include_router(unread_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status plus whether the unread stream is live.
    """
    engine = get_engine()
    return {
        "status": "ok",
        "unreadStream": "stale" if engine is None or engine.counter.stale else "live",
    }


if __name__ == "__main__":
    import uvicorn

    _server = get_config().server
    uvicorn.run("roomsync.main:app", host=_server.host, port=_server.port)
