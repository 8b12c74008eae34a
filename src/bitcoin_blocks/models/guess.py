# src/bitcoin_blocks/models/guess.py
"""Models capturing player predictions."""

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bitcoin_blocks.db.session import Base


class Guess(Base):
    """One principal's transaction-count prediction for a round.

    Guesses are immutable once stored; the autoincrement id records
    insertion order and breaks ties between identical submissions.
    """

    __tablename__ = "guesses"
    __table_args__ = (
        UniqueConstraint("round_id", "principal_id", name="uq_guesses_round_principal"),
        Index("ix_guesses_round_id", "round_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    round_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("rounds.id", ondelete="CASCADE"),
        nullable=False,
    )
    principal_id: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    submitted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
