# src/bitcoin_blocks/main.py
"""Main entry point for the Bitcoin Blocks application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from bitcoin_blocks.api.v1 import (
    admin_router,
    feed_router,
    rounds_router,
    transfers_router,
)
from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.services.block_watcher import BlockWatcher
from bitcoin_blocks.services.errors import (
    DuplicateError,
    GameError,
    InvalidStateError,
    NoParticipantsError,
    NotFoundError,
    UnauthorizedError,
    UpstreamUnavailableError,
    ValidationError,
)
from bitcoin_blocks.services.gateway import get_announcement_client, get_block_explorer
from bitcoin_blocks.services.settlement import get_transfer_ledger

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# HTTP status for each engine error kind
ERROR_STATUS: dict[type[GameError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    DuplicateError: status.HTTP_409_CONFLICT,
    NoParticipantsError: status.HTTP_409_CONFLICT,
    UpstreamUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

# Initialize FastAPI app
app = FastAPI(
    title="Bitcoin Blocks API",
    description="Guess the transaction count of upcoming Bitcoin blocks",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(rounds_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")
app.include_router(transfers_router, prefix="/api/v1")
app.include_router(feed_router, prefix="/api/v1")


@app.exception_handler(GameError)
async def handle_game_error(request: Request, exc: GameError) -> JSONResponse:
    """Translate engine errors into status codes carrying the error kind."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "detail": exc.message},
    )


@app.on_event("startup")
async def on_startup() -> None:
    if settings.block_watcher_enabled:
        watcher = BlockWatcher()
        await watcher.start()
        app.state.block_watcher = watcher
        logger.info("Block watcher started (every %.0fs)", watcher.interval)
    else:
        app.state.block_watcher = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    watcher: BlockWatcher | None = getattr(app.state, "block_watcher", None)
    if watcher:
        await watcher.stop()
    await get_block_explorer().close()
    await get_announcement_client().close()
    await get_transfer_ledger().dispatcher.close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Guess the transaction count of upcoming Bitcoin blocks",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("bitcoin_blocks.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
