# src/bitcoin_blocks/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import (
    admin_router,
    feed_router,
    rounds_router,
    transfers_router,
)

__all__ = [
    "admin_router",
    "feed_router",
    "rounds_router",
    "transfers_router",
]
