"""Public round endpoints: browsing rounds and submitting guesses."""

from fastapi import APIRouter, HTTPException, Query, status

from bitcoin_blocks.api.v1.dependencies import (
    CurrentPrincipalDep,
    RoundServiceDep,
    SessionDep,
)
from bitcoin_blocks.schemas import (
    GuessCreate,
    GuessResponse,
    PrizeConfigResponse,
    RoundListResponse,
    RoundResponse,
)
from bitcoin_blocks.services.prize_config import PrizeConfigService

router = APIRouter(tags=["rounds"])


@router.get("/rounds", response_model=RoundListResponse)
async def list_rounds(
    db: SessionDep,
    service: RoundServiceDep,
    round_status: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> RoundListResponse:
    """List rounds, newest first."""
    rounds, total = service.list_rounds(db, status=round_status, page=page, limit=limit)
    return RoundListResponse(
        items=[RoundResponse.model_validate(round_) for round_ in rounds],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/rounds/active", response_model=RoundResponse)
async def get_active_round(db: SessionDep, service: RoundServiceDep) -> RoundResponse:
    """Return the most recent open round."""
    round_ = service.get_active_round(db)
    if round_ is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active round")
    return RoundResponse.model_validate(round_)


@router.get("/rounds/{round_id}", response_model=RoundResponse)
async def get_round(round_id: str, db: SessionDep, service: RoundServiceDep) -> RoundResponse:
    return RoundResponse.model_validate(service.get_round(db, round_id))


@router.get("/rounds/{round_id}/guesses", response_model=list[GuessResponse])
async def list_guesses(
    round_id: str, db: SessionDep, service: RoundServiceDep
) -> list[GuessResponse]:
    """List guesses for a round in submission order."""
    return [GuessResponse.model_validate(guess) for guess in service.list_guesses(db, round_id)]


@router.get("/rounds/{round_id}/my-guess", response_model=GuessResponse)
async def get_my_guess(
    round_id: str,
    principal: CurrentPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> GuessResponse:
    guess = service.get_principal_guess(db, round_id, principal.principal_id)
    if guess is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No guess submitted")
    return GuessResponse.model_validate(guess)


@router.post(
    "/rounds/{round_id}/guesses",
    response_model=GuessResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_guess(
    round_id: str,
    guess_data: GuessCreate,
    principal: CurrentPrincipalDep,
    db: SessionDep,
    service: RoundServiceDep,
) -> GuessResponse:
    """Submit the caller's single guess for an open round."""
    guess = service.submit_guess(
        db,
        round_id,
        principal.principal_id,
        guess_data.value,
        display_name=guess_data.display_name or principal.display_name,
        avatar_url=guess_data.avatar_url or principal.avatar_url,
    )
    return GuessResponse.model_validate(guess)


@router.get("/prize-config", response_model=PrizeConfigResponse)
async def get_prize_config(db: SessionDep) -> PrizeConfigResponse:
    """Return the current prize configuration."""
    snapshot = PrizeConfigService.current(db)
    return PrizeConfigResponse(
        version=snapshot.version,
        payload=snapshot.payload,
        updated_at=snapshot.updated_at,
        updated_by=snapshot.updated_by,
    )
