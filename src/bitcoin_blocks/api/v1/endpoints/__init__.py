# src/bitcoin_blocks/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .admin import router as admin_router
from .feed import router as feed_router
from .rounds import router as rounds_router
from .transfers import router as transfers_router

__all__ = [
    "admin_router",
    "feed_router",
    "rounds_router",
    "transfers_router",
]
