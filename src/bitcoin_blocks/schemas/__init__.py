# src/bitcoin_blocks/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .common import (
    AnnouncementCreate,
    AnnouncementResponse,
    AuditLogResponse,
    BlockResponse,
    ChangeBatchResponse,
    ChangeEventResponse,
    ErrorLogResponse,
    ErrorResponse,
)
from .prize_config import PrizeConfigResponse, PrizePayload
from .round import (
    BatchItemResponse,
    GuessCreate,
    GuessResponse,
    RoundBatchClose,
    RoundBatchCreate,
    RoundCreate,
    RoundListResponse,
    RoundResponse,
    RoundResultResponse,
)
from .transfer import (
    TransferCreate,
    TransferFailure,
    TransferRequestResponse,
    TransferResponse,
    TransferSuccess,
)

__all__ = [
    "AnnouncementCreate", "AnnouncementResponse",
    "AuditLogResponse", "ErrorLogResponse", "ErrorResponse",
    "BlockResponse",
    "ChangeBatchResponse", "ChangeEventResponse",
    "PrizeConfigResponse", "PrizePayload",
    "BatchItemResponse", "GuessCreate", "GuessResponse",
    "RoundBatchClose", "RoundBatchCreate", "RoundCreate",
    "RoundListResponse", "RoundResponse", "RoundResultResponse",
    "TransferCreate", "TransferFailure", "TransferRequestResponse",
    "TransferResponse", "TransferSuccess",
]
