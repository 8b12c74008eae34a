"""Settlement ledger for prize transfers.

Transfers are recorded here and executed elsewhere: a payment worker either
receives each new record through :class:`WebhookTransferDispatcher` or polls
pending records, then reports back through ``mark_success``/``mark_failed``.
The idempotency key is the only identity that matters; replaying a request
with a known key returns the original record untouched.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bitcoin_blocks.core.security import require_admin, require_settlement_actor
from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.models import TransferRecord
from bitcoin_blocks.models.change_event import CHANGE_INSERT, CHANGE_UPDATE
from bitcoin_blocks.models.transfer import (
    TRANSFER_STATUS_FAILED,
    TRANSFER_STATUS_PENDING,
    TRANSFER_STATUS_SUCCESS,
)
from bitcoin_blocks.services.audit import record_action, record_error
from bitcoin_blocks.services.errors import (
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from bitcoin_blocks.services.realtime import publish_change
from bitcoin_blocks.services.retry import (
    RetryExhaustedError,
    RetryPolicy,
    SleepFn,
    TransientError,
    retry_async,
)

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255


@dataclass(frozen=True)
class TransferOutcome:
    """Result of a transfer request; ``already_processed`` marks a replayed key."""

    record: TransferRecord
    already_processed: bool


def coerce_amount(value: object) -> Decimal:
    """Parse a positive, finite decimal amount."""
    if isinstance(value, bool):
        raise ValidationError("Amount must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


def transfer_message(record: TransferRecord) -> dict[str, Any]:
    """Serializable hand-off payload for the payment worker."""
    return {
        "transfer_id": record.id,
        "winner_reference": record.winner_reference,
        "amount": format(Decimal(record.amount).normalize(), "f"),
        "idempotency_key": record.idempotency_key,
        "round_id": record.round_id,
        "requesting_principal": record.requesting_principal,
    }


class TransferDispatcher(Protocol):
    """Hands a committed transfer to whatever executes payments."""

    async def dispatch(self, message: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class PaymentWorkerConfig:
    """Immutable configuration for the payment worker hand-off."""

    url: str | None
    token: str | None
    timeout_seconds: float
    max_attempts: int

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=1.0,
            timeout=self.timeout_seconds,
        )


def load_payment_worker_config() -> PaymentWorkerConfig:
    return PaymentWorkerConfig(
        url=settings.payment_worker_url,
        token=settings.payment_worker_token,
        timeout_seconds=float(settings.payment_worker_timeout_seconds),
        max_attempts=settings.payment_worker_max_attempts,
    )


class WebhookTransferDispatcher:
    """POSTs new transfers to the payment worker, or leaves them for polling."""

    def __init__(
        self,
        config: PaymentWorkerConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.config = config or load_payment_worker_config()
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None), transport=self._transport)
        return self._client

    async def _post_once(self, message: dict[str, Any]) -> None:
        headers = {"Idempotency-Key": message["idempotency_key"]}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        response = await self._ensure_client().post(
            self.config.url or "", json=message, headers=headers
        )
        if not response.is_success:
            raise TransientError(f"Payment worker responded with {response.status_code}")

    async def dispatch(self, message: dict[str, Any]) -> None:
        if not self.config.url:
            logger.info(
                "No payment worker configured; transfer %s left pending for polling",
                message["transfer_id"],
            )
            return
        await retry_async(
            lambda: self._post_once(message),
            self.config.retry_policy,
            label=f"transfer dispatch {message['transfer_id']}",
            sleep=self._sleep,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class TransferLedger:
    """Idempotent transfer records with pending -> success|failed transitions."""

    def __init__(
        self,
        dispatcher: TransferDispatcher | None = None,
        *,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self.dispatcher: TransferDispatcher = dispatcher or WebhookTransferDispatcher()
        self._clock = clock

    @staticmethod
    def get_transfer(db: Session, transfer_id: str) -> TransferRecord:
        record = db.get(TransferRecord, transfer_id)
        if record is None:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return record

    @staticmethod
    def get_by_key(db: Session, idempotency_key: str) -> TransferRecord:
        record = (
            db.query(TransferRecord)
            .filter(TransferRecord.idempotency_key == idempotency_key)
            .first()
        )
        if record is None:
            raise NotFoundError("No transfer recorded for that idempotency key")
        return record

    @staticmethod
    def list_transfers(
        db: Session, *, status: str | None = None, limit: int = 100
    ) -> list[TransferRecord]:
        query = db.query(TransferRecord)
        if status:
            query = query.filter(TransferRecord.status == status)
        return query.order_by(TransferRecord.created_at, TransferRecord.id).limit(limit).all()

    def request_transfer(
        self,
        db: Session,
        *,
        winner_reference: str,
        amount: object,
        requesting_principal: str,
        idempotency_key: str,
        round_id: str | None = None,
        commit: bool = True,
    ) -> TransferOutcome:
        """Record a pending transfer, or return the record already holding the key.

        With ``commit=False`` the insert joins the caller's transaction; the
        caller commits and then calls :meth:`dispatch`.
        """
        require_admin(requesting_principal)
        if not winner_reference or not winner_reference.strip():
            raise ValidationError("Winner reference is required")
        key = (idempotency_key or "").strip()
        if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError("Idempotency key must be 1-255 characters")
        parsed_amount = coerce_amount(amount)

        existing = self._find_by_key(db, key)
        if existing is not None:
            logger.info("Transfer key %s already processed (status %s)", key, existing.status)
            return TransferOutcome(record=existing, already_processed=True)

        now = self._clock()
        record = TransferRecord(
            id=str(uuid.uuid4()),
            winner_reference=winner_reference.strip(),
            amount=parsed_amount,
            requesting_principal=requesting_principal,
            status=TRANSFER_STATUS_PENDING,
            idempotency_key=key,
            round_id=round_id,
            created_at=now,
            updated_at=now,
        )
        try:
            with db.begin_nested():
                db.add(record)
                db.flush()
        except IntegrityError as exc:
            existing = self._find_by_key(db, key)
            if existing is None:
                raise DuplicateError("Transfer could not be recorded") from exc
            return TransferOutcome(record=existing, already_processed=True)

        publish_change(db, record, CHANGE_INSERT)
        record_action(
            db,
            requesting_principal,
            "request_transfer",
            {
                "transfer_id": record.id,
                "winner_reference": record.winner_reference,
                "amount": str(parsed_amount),
                "round_id": round_id,
            },
        )
        if commit:
            db.commit()
        return TransferOutcome(record=record, already_processed=False)

    async def dispatch(self, db: Session, record: TransferRecord) -> bool:
        """Hand a committed transfer to the dispatcher; failures are logged, not raised."""
        message = transfer_message(record)
        try:
            await self.dispatcher.dispatch(message)
        except (RetryExhaustedError, httpx.HTTPError) as exc:
            record_error(
                db,
                f"Transfer {record.id} could not be handed to the payment worker",
                category="network",
                severity="high",
                context=message,
                exc=exc,
            )
            db.commit()
            return False
        return True

    def mark_success(
        self, db: Session, transfer_id: str, *, actor: str, external_reference: str
    ) -> TransferRecord:
        if not external_reference or not external_reference.strip():
            raise ValidationError("External transaction reference is required")
        return self._complete(
            db,
            transfer_id,
            actor=actor,
            status=TRANSFER_STATUS_SUCCESS,
            external_reference=external_reference.strip(),
        )

    def mark_failed(
        self, db: Session, transfer_id: str, *, actor: str, reason: str | None = None
    ) -> TransferRecord:
        return self._complete(
            db,
            transfer_id,
            actor=actor,
            status=TRANSFER_STATUS_FAILED,
            reason=reason,
        )

    def _complete(
        self,
        db: Session,
        transfer_id: str,
        *,
        actor: str,
        status: str,
        external_reference: str | None = None,
        reason: str | None = None,
    ) -> TransferRecord:
        require_settlement_actor(actor)
        result = db.execute(
            update(TransferRecord)
            .where(
                TransferRecord.id == transfer_id,
                TransferRecord.status == TRANSFER_STATUS_PENDING,
            )
            .values(
                status=status,
                external_transaction_reference=external_reference,
                failure_reason=reason,
                updated_at=self._clock(),
            )
        )
        if result.rowcount == 0:
            record = self.get_transfer(db, transfer_id)
            raise InvalidStateError(f"Transfer {transfer_id} is already {record.status}")

        record = self.get_transfer(db, transfer_id)
        db.refresh(record)
        publish_change(db, record, CHANGE_UPDATE)
        record_action(
            db,
            actor,
            f"transfer_{status}",
            {
                "transfer_id": transfer_id,
                "external_reference": external_reference,
                "reason": reason,
            },
        )
        db.commit()
        logger.info("Transfer %s marked %s by %s", transfer_id, status, actor)
        return record

    @staticmethod
    def _find_by_key(db: Session, key: str) -> TransferRecord | None:
        return db.query(TransferRecord).filter(TransferRecord.idempotency_key == key).first()


class _TransferLedgerSingleton:
    """Singleton wrapper for TransferLedger."""

    _instance: TransferLedger | None = None

    @classmethod
    def get_instance(cls) -> TransferLedger:
        if cls._instance is None:
            cls._instance = TransferLedger()
        return cls._instance


def get_transfer_ledger() -> TransferLedger:
    """Return the shared transfer ledger."""
    return _TransferLedgerSingleton.get_instance()
