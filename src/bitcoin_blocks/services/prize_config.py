"""Versioned prize configuration store."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import pydantic
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bitcoin_blocks.core.security import require_admin
from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.models import PrizeConfig
from bitcoin_blocks.schemas.prize_config import PrizePayload
from bitcoin_blocks.services.audit import record_action
from bitcoin_blocks.services.errors import DuplicateError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrizeSnapshot:
    """A prize configuration version with its validated payload."""

    version: int
    payload: PrizePayload
    updated_at: int | None = None
    updated_by: str | None = None


def default_payload() -> PrizePayload:
    """Payload used until an administrator saves the first configuration."""
    return PrizePayload(
        jackpot_amount=settings.default_jackpot_amount,
        first_place_amount=settings.default_first_place_amount,
        second_place_amount=settings.default_second_place_amount,
        currency_type=settings.default_currency_type,
    )


def parse_payload(data: PrizePayload | Mapping[str, Any]) -> PrizePayload:
    """Validate raw prize data, translating pydantic errors into engine errors."""
    if isinstance(data, PrizePayload):
        return data
    try:
        return PrizePayload.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid prize configuration: {exc.errors()[0]['msg']}") from exc


class PrizeConfigService:
    """Insert-only configuration; the maximum version is current."""

    @staticmethod
    def current(db: Session) -> PrizeSnapshot:
        row = db.query(PrizeConfig).order_by(PrizeConfig.version.desc()).first()
        if row is None:
            return PrizeSnapshot(version=0, payload=default_payload())
        return PrizeSnapshot(
            version=row.version,
            payload=parse_payload(row.payload),
            updated_at=row.updated_at,
            updated_by=row.updated_by,
        )

    @staticmethod
    def save(
        db: Session,
        actor: str,
        data: PrizePayload | Mapping[str, Any],
    ) -> PrizeSnapshot:
        """Validate and insert a new configuration version.

        Raises:
            UnauthorizedError: if ``actor`` is not an administrator.
            ValidationError: if the payload is malformed.
            DuplicateError: if a concurrent save claimed the same version.
        """
        require_admin(actor)
        payload = parse_payload(data)

        latest = db.query(func.max(PrizeConfig.version)).scalar() or 0
        row = PrizeConfig(
            version=latest + 1,
            payload=payload.model_dump(mode="json"),
            updated_by=actor,
            updated_at=epoch_millis(),
        )
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
        except IntegrityError as exc:
            raise DuplicateError(
                f"Prize configuration version {latest + 1} was saved concurrently"
            ) from exc

        record_action(
            db,
            actor,
            "update_prize_config",
            {"version": row.version, "payload": row.payload},
        )
        db.commit()
        logger.info("Prize configuration v%d saved by %s", row.version, actor)
        return PrizeSnapshot(
            version=row.version,
            payload=payload,
            updated_at=row.updated_at,
            updated_by=actor,
        )

    @staticmethod
    def history(db: Session, limit: int = 20) -> list[PrizeSnapshot]:
        rows = db.query(PrizeConfig).order_by(PrizeConfig.version.desc()).limit(limit).all()
        return [
            PrizeSnapshot(
                version=row.version,
                payload=parse_payload(row.payload),
                updated_at=row.updated_at,
                updated_by=row.updated_by,
            )
            for row in rows
        ]
