# src/bitcoin_blocks/models/audit.py
"""Append-only audit and error trail."""

from typing import Any

from sqlalchemy import JSON, BigInteger, CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bitcoin_blocks.db.session import Base

ERROR_CATEGORIES = (
    "network",
    "database",
    "authentication",
    "validation",
    "system",
    "business_logic",
)
ERROR_SEVERITIES = ("low", "medium", "high", "critical")


class AuditLog(Base):
    """Administrative action performed by a principal."""

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_created_at", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ErrorLog(Base):
    """System error captured for operators."""

    __tablename__ = "error_logs"
    __table_args__ = (
        CheckConstraint(
            "category IN ('network', 'database', 'authentication', 'validation', "
            "'system', 'business_logic')",
            name="ck_error_logs_category",
        ),
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_error_logs_severity",
        ),
        Index("ix_error_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
