"""Administrative endpoints for running rounds and inspecting the trail."""

from typing import Any

from fastapi import APIRouter, Query, status

from bitcoin_blocks.api.v1.dependencies import (
    AdminPrincipalDep,
    BlockExplorerDep,
    RoundServiceDep,
    SessionDep,
)
from bitcoin_blocks.schemas import (
    AuditLogResponse,
    BatchItemResponse,
    ErrorLogResponse,
    GuessResponse,
    PrizeConfigResponse,
    PrizePayload,
    RoundBatchClose,
    RoundBatchCreate,
    RoundCreate,
    RoundResponse,
    RoundResultResponse,
    TransferRequestResponse,
    TransferResponse,
)
from bitcoin_blocks.services.audit import list_audit_logs, list_error_logs
from bitcoin_blocks.services.prize_config import PrizeConfigService, PrizeSnapshot

router = APIRouter(prefix="/admin", tags=["admin"])


def _prize_response(snapshot: PrizeSnapshot) -> PrizeConfigResponse:
    return PrizeConfigResponse(
        version=snapshot.version,
        payload=snapshot.payload,
        updated_at=snapshot.updated_at,
        updated_by=snapshot.updated_by,
    )


@router.post("/rounds", response_model=RoundResponse, status_code=status.HTTP_201_CREATED)
async def create_round(
    round_data: RoundCreate,
    admin: AdminPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> RoundResponse:
    """Create and announce a new open round."""
    round_ = await service.create_round(db, admin.principal_id, **round_data.model_dump())
    return RoundResponse.model_validate(round_)


@router.post("/rounds/batch", response_model=list[BatchItemResponse])
async def batch_create_rounds(
    batch: RoundBatchCreate,
    admin: AdminPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> list[BatchItemResponse]:
    results = await service.batch_create_rounds(
        db, admin.principal_id, [draft.model_dump() for draft in batch.rounds]
    )
    return [BatchItemResponse.model_validate(result) for result in results]


@router.post("/rounds/batch-close", response_model=list[BatchItemResponse])
async def batch_close_rounds(
    batch: RoundBatchClose,
    admin: AdminPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> list[BatchItemResponse]:
    results = service.batch_close_rounds(db, admin.principal_id, batch.round_ids)
    return [BatchItemResponse.model_validate(result) for result in results]


@router.post("/rounds/{round_id}/close", response_model=RoundResponse)
async def close_round(
    round_id: str,
    admin: AdminPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> RoundResponse:
    """Stop accepting guesses for a round."""
    return RoundResponse.model_validate(service.close_round(db, admin.principal_id, round_id))


@router.post("/rounds/{round_id}/result", response_model=RoundResultResponse)
async def compute_result(
    round_id: str,
    admin: AdminPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> RoundResultResponse:
    """Resolve the target block, select the winner and request the payout."""
    result = await service.compute_result(db, admin.principal_id, round_id)
    return RoundResultResponse(
        round=RoundResponse.model_validate(result.round),
        winner=GuessResponse.model_validate(result.winner),
        runner_up=GuessResponse.model_validate(result.runner_up) if result.runner_up else None,
        distance=result.distance,
        transfer_id=result.transfer.id if result.transfer else None,
        transfer_status=result.transfer.status if result.transfer else None,
        transfer_already_processed=result.transfer_already_processed,
    )


@router.post("/rounds/{round_id}/settle", response_model=TransferRequestResponse)
async def settle_round(
    round_id: str,
    admin: AdminPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> TransferRequestResponse:
    """Re-issue the idempotent prize transfer for a finished round."""
    outcome = await service.settle_round(db, admin.principal_id, round_id)
    return TransferRequestResponse(
        transfer=TransferResponse.model_validate(outcome.record),
        already_processed=outcome.already_processed,
    )


@router.put("/prize-config", response_model=PrizeConfigResponse)
async def update_prize_config(
    payload: PrizePayload,
    admin: AdminPrincipalDep,
    db: SessionDep,
) -> PrizeConfigResponse:
    """Save a new prize configuration version."""
    return _prize_response(PrizeConfigService.save(db, admin.principal_id, payload))


@router.get("/prize-config/history", response_model=list[PrizeConfigResponse])
async def prize_config_history(
    admin: AdminPrincipalDep,
    db: SessionDep,
    limit: int = Query(20, ge=1, le=100),
) -> list[PrizeConfigResponse]:
    return [_prize_response(snapshot) for snapshot in PrizeConfigService.history(db, limit)]


@router.get("/stats")
async def stats(admin: AdminPrincipalDep, db: SessionDep, service: RoundServiceDep) -> dict[str, Any]:
    """Aggregate round, guess and transfer counters."""
    active = service.get_active_round(db)
    summary = service.round_stats(db)
    summary["active_round_id"] = active.id if active else None
    return summary


@router.get("/audit-logs", response_model=list[AuditLogResponse])
async def audit_logs(
    admin: AdminPrincipalDep,
    db: SessionDep,
    action: str | None = None,
    limit: int = Query(100, ge=1, le=500),
) -> list[AuditLogResponse]:
    return [
        AuditLogResponse.model_validate(entry)
        for entry in list_audit_logs(db, action=action, limit=limit)
    ]


@router.get("/error-logs", response_model=list[ErrorLogResponse])
async def error_logs(
    admin: AdminPrincipalDep,
    db: SessionDep,
    category: str | None = None,
    severity: str | None = None,
    limit: int = Query(100, ge=1, le=500),
) -> list[ErrorLogResponse]:
    return [
        ErrorLogResponse.model_validate(entry)
        for entry in list_error_logs(db, category=category, severity=severity, limit=limit)
    ]


@router.get("/system-health")
async def system_health(
    admin: AdminPrincipalDep,
    db: SessionDep,
    explorer: BlockExplorerDep,
) -> dict[str, Any]:
    """Report explorer reachability and the error trail volume."""
    recent_errors = list_error_logs(db, limit=20)
    return {
        "explorer": await explorer.health_check(),
        "recent_errors": len(recent_errors),
        "critical_errors": sum(1 for entry in recent_errors if entry.severity == "critical"),
    }
