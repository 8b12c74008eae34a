# src/bitcoin_blocks/schemas/round.py
"""Round and guess Pydantic schemas."""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictFloat, StrictInt


class RoundCreate(BaseModel):
    """Schema for creating a new round."""

    round_number: int = Field(..., description="Human-facing round number")
    target_block: int = Field(..., description="Height of the block whose tx count is guessed")
    duration: int = Field(..., description="Guessing window in minutes")
    start_time: int | None = Field(None, description="Epoch ms; defaults to now")
    end_time: int | None = Field(None, description="Epoch ms; defaults to start + duration")
    prize: str | None = Field(None, description="Prize label; defaults to the current jackpot")
    metadata: dict[str, Any] | None = None
    announce: bool = True


class RoundBatchCreate(BaseModel):
    rounds: list[RoundCreate] = Field(..., min_length=1, max_length=50)


class RoundBatchClose(BaseModel):
    round_ids: list[str] = Field(..., min_length=1, max_length=50)


class RoundResponse(BaseModel):
    """Schema for round information returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    round_number: int
    start_time: int
    end_time: int
    duration: int
    target_block: int
    prize: str
    status: str
    actual_tx_count: int | None = None
    block_hash: str | None = None
    winning_principal: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("round_metadata", "metadata"),
    )
    created_at: int


class RoundListResponse(BaseModel):
    items: list[RoundResponse]
    total: int
    page: int
    limit: int


class GuessCreate(BaseModel):
    """Schema for submitting a guess.

    Booleans and strings are rejected here; range and whole-number checks are
    applied by the round service.
    """

    value: StrictInt | StrictFloat = Field(..., description="Predicted transaction count")
    display_name: str | None = Field(None, max_length=100)
    avatar_url: str | None = Field(None, max_length=500)


class GuessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    round_id: str
    principal_id: str
    value: int
    submitted_at: int
    display_name: str | None = None
    avatar_url: str | None = None


class BatchItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    index: int
    success: bool
    round_id: str | None = None
    error: str | None = None
    detail: str | None = None


class RoundResultResponse(BaseModel):
    """Outcome of result computation."""

    round: RoundResponse
    winner: GuessResponse
    runner_up: GuessResponse | None = None
    distance: int
    transfer_id: str | None = None
    transfer_status: str | None = None
    transfer_already_processed: bool = False
