"""Append-only audit and error trail."""

from __future__ import annotations

import logging
import traceback
from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session

from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.models import AuditLog, ErrorLog
from bitcoin_blocks.models.audit import ERROR_CATEGORIES, ERROR_SEVERITIES

logger = logging.getLogger(__name__)

MAX_STACK_CHARS = 4000


def record_action(
    db: Session,
    actor_id: str,
    action: str,
    details: Mapping[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit entry in the caller's transaction."""
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        details=dict(details or {}),
        created_at=epoch_millis(),
    )
    db.add(entry)
    return entry


def record_error(
    db: Session,
    message: str,
    *,
    category: str = "system",
    severity: str = "medium",
    context: Mapping[str, Any] | None = None,
    exc: BaseException | None = None,
) -> ErrorLog:
    """Stage an error-trail entry in the caller's transaction."""
    if category not in ERROR_CATEGORIES:
        category = "system"
    if severity not in ERROR_SEVERITIES:
        severity = "medium"

    stack = None
    if exc is not None:
        stack = "".join(traceback.format_exception(exc))[-MAX_STACK_CHARS:]

    logger.log(
        logging.ERROR if severity in {"high", "critical"} else logging.WARNING,
        "[%s/%s] %s",
        category,
        severity,
        message,
    )
    entry = ErrorLog(
        message=message,
        category=category,
        severity=severity,
        context=dict(context or {}),
        stack=stack,
        created_at=epoch_millis(),
    )
    db.add(entry)
    return entry


def list_audit_logs(
    db: Session, *, action: str | None = None, limit: int = 100
) -> list[AuditLog]:
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    return query.order_by(AuditLog.id.desc()).limit(limit).all()


def list_error_logs(
    db: Session,
    *,
    category: str | None = None,
    severity: str | None = None,
    limit: int = 100,
) -> list[ErrorLog]:
    query = db.query(ErrorLog)
    if category:
        query = query.filter(ErrorLog.category == category)
    if severity:
        query = query.filter(ErrorLog.severity == severity)
    return query.order_by(ErrorLog.id.desc()).limit(limit).all()
