"""Shared API dependencies for authentication and common functionality."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from bitcoin_blocks.core.security import decode_access_token, is_admin
from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.db.session import get_db
from bitcoin_blocks.services.gateway import (
    AnnouncementClient,
    BlockExplorerClient,
    get_announcement_client,
    get_block_explorer,
)
from bitcoin_blocks.services.rate_limit import RateLimiter, get_rate_limiter
from bitcoin_blocks.services.rounds import RoundService, get_round_service
from bitcoin_blocks.services.settlement import TransferLedger, get_transfer_ledger

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

ADMIN_RATE_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class Principal:
    """Identity resolved from an already-issued access token."""

    principal_id: str
    display_name: str | None = None
    avatar_url: str | None = None


def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> Principal:
    """Resolve the calling principal from the bearer token.

    Raises:
        HTTPException: If the token is invalid or carries no subject
    """
    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return Principal(
        principal_id=str(subject),
        display_name=payload.get("name"),
        avatar_url=payload.get("pfp"),
    )


# Type alias for current principal dependency
CurrentPrincipalDep = Annotated[Principal, Depends(get_current_principal)]


def get_rate_limiter_dep() -> RateLimiter:
    """Return the shared rate limiter."""
    return get_rate_limiter()


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter_dep)]


def get_admin_principal(principal: CurrentPrincipalDep, limiter: RateLimiterDep) -> Principal:
    """Require an administrator and apply the per-admin request ceiling."""
    if not is_admin(principal.principal_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrative privileges required",
        )
    if not limiter.hit(
        f"admin:{principal.principal_id}",
        settings.admin_rate_limit_per_minute,
        ADMIN_RATE_WINDOW_SECONDS,
    ):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many administrative requests",
        )
    return principal


AdminPrincipalDep = Annotated[Principal, Depends(get_admin_principal)]


def get_round_service_dep() -> RoundService:
    """Return the shared round service."""
    return get_round_service()


def get_transfer_ledger_dep() -> TransferLedger:
    """Return the shared transfer ledger."""
    return get_transfer_ledger()


def get_block_explorer_dep() -> BlockExplorerClient:
    """Return the shared block explorer client."""
    return get_block_explorer()


def get_announcement_client_dep() -> AnnouncementClient:
    """Return the shared announcement client."""
    return get_announcement_client()


# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]
RoundServiceDep = Annotated[RoundService, Depends(get_round_service_dep)]
TransferLedgerDep = Annotated[TransferLedger, Depends(get_transfer_ledger_dep)]
BlockExplorerDep = Annotated[BlockExplorerClient, Depends(get_block_explorer_dep)]
AnnouncementClientDep = Annotated[AnnouncementClient, Depends(get_announcement_client_dep)]
