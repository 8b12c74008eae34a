"""Transfer ledger endpoints for administrators and the payment worker."""

from fastapi import APIRouter, HTTPException, Query, status

from bitcoin_blocks.api.v1.dependencies import (
    AdminPrincipalDep,
    CurrentPrincipalDep,
    SessionDep,
    TransferLedgerDep,
)
from bitcoin_blocks.core.security import (
    derive_idempotency_key,
    is_admin,
    is_payment_worker,
)
from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.schemas import (
    TransferCreate,
    TransferFailure,
    TransferRequestResponse,
    TransferResponse,
    TransferSuccess,
)

router = APIRouter(prefix="/transfers", tags=["transfers"])


def _require_ledger_reader(principal_id: str) -> None:
    if not (is_admin(principal_id) or is_payment_worker(principal_id)):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Transfer records are restricted",
        )


@router.post("", response_model=TransferRequestResponse)
async def request_transfer(
    transfer_data: TransferCreate,
    admin: AdminPrincipalDep,
    db: SessionDep,
    ledger: TransferLedgerDep,
) -> TransferRequestResponse:
    """Record a transfer request; replaying an idempotency key returns the original."""
    key = transfer_data.idempotency_key or derive_idempotency_key(
        "manual-transfer",
        transfer_data.winner_reference,
        format(transfer_data.amount.normalize(), "f"),
        admin.principal_id,
        epoch_millis() // 60_000,
    )
    outcome = ledger.request_transfer(
        db,
        winner_reference=transfer_data.winner_reference,
        amount=transfer_data.amount,
        requesting_principal=admin.principal_id,
        idempotency_key=key,
        round_id=transfer_data.round_id,
    )
    if not outcome.already_processed:
        await ledger.dispatch(db, outcome.record)
    return TransferRequestResponse(
        transfer=TransferResponse.model_validate(outcome.record),
        already_processed=outcome.already_processed,
    )


@router.get("", response_model=list[TransferResponse])
async def list_transfers(
    principal: CurrentPrincipalDep,
    db: SessionDep,
    ledger: TransferLedgerDep,
    transfer_status: str | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
) -> list[TransferResponse]:
    """List transfers; the payment worker polls ``?status=pending``."""
    _require_ledger_reader(principal.principal_id)
    return [
        TransferResponse.model_validate(record)
        for record in ledger.list_transfers(db, status=transfer_status, limit=limit)
    ]


@router.get("/by-key/{idempotency_key}", response_model=TransferResponse)
async def get_transfer_by_key(
    idempotency_key: str,
    principal: CurrentPrincipalDep,
    db: SessionDep,
    ledger: TransferLedgerDep,
) -> TransferResponse:
    _require_ledger_reader(principal.principal_id)
    return TransferResponse.model_validate(ledger.get_by_key(db, idempotency_key))


@router.get("/{transfer_id}", response_model=TransferResponse)
async def get_transfer(
    transfer_id: str,
    principal: CurrentPrincipalDep,
    db: SessionDep,
    ledger: TransferLedgerDep,
) -> TransferResponse:
    _require_ledger_reader(principal.principal_id)
    return TransferResponse.model_validate(ledger.get_transfer(db, transfer_id))


@router.post("/{transfer_id}/success", response_model=TransferResponse)
async def mark_transfer_success(
    transfer_id: str,
    completion: TransferSuccess,
    principal: CurrentPrincipalDep,
    db: SessionDep,
    ledger: TransferLedgerDep,
) -> TransferResponse:
    """Record the on-chain reference of a completed transfer."""
    record = ledger.mark_success(
        db,
        transfer_id,
        actor=principal.principal_id,
        external_reference=completion.external_transaction_reference,
    )
    return TransferResponse.model_validate(record)


@router.post("/{transfer_id}/failure", response_model=TransferResponse)
async def mark_transfer_failed(
    transfer_id: str,
    failure: TransferFailure,
    principal: CurrentPrincipalDep,
    db: SessionDep,
    ledger: TransferLedgerDep,
) -> TransferResponse:
    record = ledger.mark_failed(db, transfer_id, actor=principal.principal_id, reason=failure.reason)
    return TransferResponse.model_validate(record)
