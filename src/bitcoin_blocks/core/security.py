# src/bitcoin_blocks/core/security.py
"""Principal checks, access tokens and idempotency key derivation."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import jwt

from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.services.errors import UnauthorizedError


def admin_principals() -> frozenset[str]:
    """Return the administrative allow-list, including the watcher identity when enabled."""
    principals = set(settings.admin_principal_ids)
    if settings.block_watcher_enabled and settings.automation_principal_id:
        principals.add(settings.automation_principal_id)
    return frozenset(principals)


def is_admin(principal_id: str | None) -> bool:
    """Return True if the principal is on the administrative allow-list."""
    return bool(principal_id) and principal_id in admin_principals()


def require_admin(principal_id: str | None) -> None:
    """Raise UnauthorizedError unless the principal is an administrator."""
    if not is_admin(principal_id):
        raise UnauthorizedError("Administrative privileges required")


def is_payment_worker(principal_id: str | None) -> bool:
    return bool(principal_id) and principal_id in settings.payment_worker_principal_ids


def require_settlement_actor(principal_id: str | None) -> None:
    """Allow administrators and payment workers to complete transfers."""
    if not (is_admin(principal_id) or is_payment_worker(principal_id)):
        raise UnauthorizedError("Only administrators or payment workers may complete transfers")


def derive_idempotency_key(*parts: object) -> str:
    """Hash the given parts into a stable hex idempotency key."""
    material = ":".join(str(part) for part in parts)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def settlement_idempotency_key(round_id: str, winner: str, amount: object) -> str:
    """Key used for the prize transfer of a finished round."""
    return derive_idempotency_key("round-settlement", round_id, winner, amount)


def create_access_token(subject: str, extra_claims: dict[str, str] | None = None) -> str:
    """Create a JWT access token for the given principal id."""
    to_encode: dict[str, object] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify an access token; raises ``jose.JWTError`` on failure."""
    claims: dict[str, Any] = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.jwt_algorithm],
    )
    return claims
