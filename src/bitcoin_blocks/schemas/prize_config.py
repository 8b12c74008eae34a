# src/bitcoin_blocks/schemas/prize_config.py
"""Prize configuration payload and API schemas."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PRIZE_CONFIG_KIND = "prize_config.v1"
MAX_EXTENSION_KEYS = 16
MAX_EXTENSION_KEY_LENGTH = 64
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ExtensionValue = str | int | float | bool | None


class PrizePayload(BaseModel):
    """Tagged, versioned prize configuration stored in ``prize_configs.payload``."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["prize_config.v1"] = PRIZE_CONFIG_KIND
    jackpot_amount: Decimal = Field(..., gt=0, allow_inf_nan=False)
    first_place_amount: Decimal = Field(..., gt=0, allow_inf_nan=False)
    second_place_amount: Decimal = Field(..., gt=0, allow_inf_nan=False)
    currency_type: str = Field(..., min_length=1, max_length=32)
    token_contract_address: str | None = Field(
        default=None,
        pattern=r"^0x[0-9a-fA-F]{40}$",
    )
    extensions: dict[str, ExtensionValue] = Field(default_factory=dict)

    @field_validator("currency_type")
    @classmethod
    def _strip_currency(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("currency_type must not be blank")
        return value

    @field_validator("extensions")
    @classmethod
    def _bound_extensions(cls, value: dict[str, ExtensionValue]) -> dict[str, ExtensionValue]:
        if len(value) > MAX_EXTENSION_KEYS:
            raise ValueError(f"at most {MAX_EXTENSION_KEYS} extension keys are allowed")
        for key in value:
            if not key or len(key) > MAX_EXTENSION_KEY_LENGTH:
                raise ValueError("extension keys must be 1-64 characters")
        return value

    @property
    def prize_label(self) -> str:
        """Denormalized prize string stored on rounds, e.g. ``"5000 $SECOND"``."""
        return f"{self.jackpot_amount} {self.currency_type}"


class PrizeConfigResponse(BaseModel):
    """Current prize configuration as exposed by the API."""

    version: int
    payload: PrizePayload
    updated_at: int | None = None
    updated_by: str | None = None
