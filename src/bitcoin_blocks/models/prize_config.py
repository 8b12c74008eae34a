# src/bitcoin_blocks/models/prize_config.py
"""Versioned prize configuration records."""

from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from bitcoin_blocks.db.session import Base


class PrizeConfig(Base):
    """Insert-only prize configuration; the highest version is current."""

    __tablename__ = "prize_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
