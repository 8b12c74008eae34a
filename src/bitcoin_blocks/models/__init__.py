# src/bitcoin_blocks/models/__init__.py
"""SQLAlchemy models for the Bitcoin Blocks game engine."""

from .audit import AuditLog, ErrorLog
from .change_event import ChangeEvent, ChangeFeedCounter
from .guess import Guess
from .prize_config import PrizeConfig
from .round import Round
from .transfer import TransferRecord

__all__ = [
    "AuditLog", "ErrorLog",
    "ChangeEvent", "ChangeFeedCounter",
    "Guess",
    "PrizeConfig",
    "Round",
    "TransferRecord",
]
