# src/bitcoin_blocks/models/change_event.py
"""Outbox of row-level changes for realtime subscribers."""

from typing import Any

from sqlalchemy import JSON, BigInteger, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bitcoin_blocks.db.session import Base

CHANGE_INSERT = "INSERT"
CHANGE_UPDATE = "UPDATE"

FEED_COUNTER_ID = 1


class ChangeEvent(Base):
    """Change to a tracked row, written in the same transaction as the change.

    ``position`` is the global feed cursor and follows commit order;
    ``row_version`` orders events per row.
    """

    __tablename__ = "change_events"
    __table_args__ = (
        UniqueConstraint(
            "table_name", "row_id", "row_version", name="uq_change_events_row_version"
        ),
        UniqueConstraint("position", name="uq_change_events_position"),
        Index("ix_change_events_table_name", "table_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position: Mapped[int] = mapped_column(BigInteger, nullable=False)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    row_id: Mapped[str] = mapped_column(String(64), nullable=False)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[str] = mapped_column(String(8), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ChangeFeedCounter(Base):
    """Single row holding the last assigned feed position.

    Writers lock it until commit, so positions become visible in order.
    """

    __tablename__ = "change_feed_counter"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
