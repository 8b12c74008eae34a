# src/bitcoin_blocks/schemas/transfer.py
"""Transfer ledger Pydantic schemas."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class TransferCreate(BaseModel):
    """Schema for requesting a prize transfer."""

    winner_reference: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., description="Positive amount in the prize currency")
    idempotency_key: str | None = Field(
        None,
        max_length=255,
        description="Caller-supplied key; derived from the request when omitted",
    )
    round_id: str | None = None


class TransferSuccess(BaseModel):
    external_transaction_reference: str = Field(..., min_length=1, max_length=255)


class TransferFailure(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    winner_reference: str
    amount: Decimal
    requesting_principal: str
    status: str
    idempotency_key: str
    external_transaction_reference: str | None = None
    failure_reason: str | None = None
    round_id: str | None = None
    created_at: int
    updated_at: int

    @field_serializer("amount")
    def _serialize_amount(self, amount: Decimal) -> str:
        return format(amount.normalize(), "f")


class TransferRequestResponse(BaseModel):
    transfer: TransferResponse
    already_processed: bool
