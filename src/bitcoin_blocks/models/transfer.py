# src/bitcoin_blocks/models/transfer.py
"""SQLAlchemy model for prize disbursement requests."""

from decimal import Decimal

from sqlalchemy import BigInteger, CheckConstraint, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bitcoin_blocks.db.session import Base

TRANSFER_STATUS_PENDING = "pending"
TRANSFER_STATUS_SUCCESS = "success"
TRANSFER_STATUS_FAILED = "failed"


class TransferRecord(Base):
    """Idempotent record of a prize transfer handed to the payment worker."""

    __tablename__ = "transfer_records"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'success', 'failed')",
            name="ck_transfer_records_status",
        ),
        Index("ix_transfer_records_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    winner_reference: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    requesting_principal: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TRANSFER_STATUS_PENDING
    )  # 'pending', 'success', 'failed'
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_transaction_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set when the transfer settles a round.
    round_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
