# src/bitcoin_blocks/models/round.py
"""Models for prediction rounds."""

from typing import Any

from sqlalchemy import JSON, BigInteger, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bitcoin_blocks.db.session import Base

# Round lifecycle states; transitions only move forward.
ROUND_STATUS_OPEN = "open"
ROUND_STATUS_CLOSED = "closed"
ROUND_STATUS_FINISHED = "finished"
ROUND_STATUSES = (ROUND_STATUS_OPEN, ROUND_STATUS_CLOSED, ROUND_STATUS_FINISHED)


class Round(Base):
    """A single prediction round targeting one future block.

    ``actual_tx_count``, ``block_hash`` and ``winning_principal`` stay NULL
    until result computation sets all three in the same statement.
    """

    __tablename__ = "rounds"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'closed', 'finished')",
            name="ck_rounds_status",
        ),
        CheckConstraint("end_time > start_time", name="ck_rounds_time_window"),
        Index("ix_rounds_round_number", "round_number"),
        Index("ix_rounds_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    # Epoch milliseconds.
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Minutes; informational only.
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    target_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    prize: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ROUND_STATUS_OPEN
    )

    actual_tx_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    block_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    winning_principal: Mapped[str | None] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes, so the attribute is renamed.
    round_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
