"""Round state machine.

A round moves ``open -> closed -> finished`` and never back. Every
transition is a conditional ``UPDATE ... WHERE status = <expected>`` so two
concurrent callers cannot both win; the loser sees ``InvalidStateError``.
Guess uniqueness is left to the ``(round_id, principal_id)`` constraint
rather than a read-then-write check.

The service has no timers. Rounds are closed and resolved by explicit calls,
either from administrators or from :mod:`bitcoin_blocks.services.block_watcher`.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bitcoin_blocks.core.security import require_admin, settlement_idempotency_key
from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.models import Guess, Round, TransferRecord
from bitcoin_blocks.models.change_event import CHANGE_INSERT, CHANGE_UPDATE
from bitcoin_blocks.models.round import (
    ROUND_STATUS_CLOSED,
    ROUND_STATUS_FINISHED,
    ROUND_STATUS_OPEN,
    ROUND_STATUSES,
)
from bitcoin_blocks.services.audit import record_action, record_error
from bitcoin_blocks.services.errors import (
    DuplicateError,
    GameError,
    InvalidStateError,
    NoParticipantsError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from bitcoin_blocks.services.gateway import (
    MAX_ANNOUNCEMENT_LENGTH,
    AnnouncementClient,
    AnnouncementResult,
    BlockExplorerClient,
    get_announcement_client,
    get_block_explorer,
)
from bitcoin_blocks.services.prize_config import PrizeConfigService
from bitcoin_blocks.services.realtime import publish_change
from bitcoin_blocks.services.settlement import (
    TransferLedger,
    TransferOutcome,
    get_transfer_ledger,
)

logger = logging.getLogger(__name__)

MIN_GUESS_VALUE = 1
MAX_GUESS_VALUE = 20_000
MILLIS_PER_MINUTE = 60_000

_AMOUNT_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")


@dataclass(frozen=True)
class RoundResult:
    """Outcome of result computation."""

    round: Round
    winner: Guess
    runner_up: Guess | None
    distance: int
    transfer: TransferRecord | None
    transfer_already_processed: bool


@dataclass(frozen=True)
class BatchItemResult:
    """Per-item outcome of a batch operation."""

    index: int
    success: bool
    round_id: str | None = None
    error: str | None = None
    detail: str | None = None


def coerce_guess_value(value: object) -> int:
    """Return ``value`` as an int in the allowed range or raise ValidationError."""
    if isinstance(value, bool):
        raise ValidationError("Guess must be a whole number")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        number = int(value)
    else:
        raise ValidationError("Guess must be a whole number")

    if not MIN_GUESS_VALUE <= number <= MAX_GUESS_VALUE:
        raise ValidationError(
            f"Guess must be between {MIN_GUESS_VALUE} and {MAX_GUESS_VALUE}"
        )
    return number


def parse_prize(prize: str) -> tuple[Decimal, str] | None:
    """Split a prize label such as ``"5,000 $SECOND"`` into amount and currency."""
    match = _AMOUNT_RE.search(prize or "")
    if match is None:
        return None
    try:
        amount = Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None
    if amount <= 0:
        return None
    return amount, prize[match.end():].strip()


def amount_text(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


def rank_guesses(guesses: Iterable[Guess], actual: int) -> list[Guess]:
    """Order guesses by distance to ``actual``, then submission time, then insertion order."""
    return sorted(guesses, key=lambda guess: (abs(guess.value - actual), guess.submitted_at, guess.id))


def _player_label(guess: Guess) -> str:
    return f"@{guess.display_name}" if guess.display_name else guess.principal_id


def _fit(message: str) -> str:
    if len(message) <= MAX_ANNOUNCEMENT_LENGTH:
        return message
    return message[: MAX_ANNOUNCEMENT_LENGTH - 1] + "…"


def format_round_started(round_: Round) -> str:
    return _fit(
        f"🔔 Round #{round_.round_number} Started!\n\n"
        f"💰 Jackpot: {round_.prize}\n"
        f"🎯 Target Block: #{round_.target_block}\n"
        f"⏱ Duration: {round_.duration} minutes\n\n"
        "Guess how many transactions the block will hold!\n\n"
        "#BitcoinBlocks"
    )


def format_round_results(round_: Round, winner: Guess, runner_up: Guess | None) -> str:
    lines = [
        f"🏁 Round #{round_.round_number} Results!",
        "",
        f"Block #{round_.target_block} had {round_.actual_tx_count} transactions.",
        "",
        f"🥇 Winner: {_player_label(winner)} (guessed {winner.value})",
    ]
    if runner_up is not None:
        lines.append(f"🥈 Runner-up: {_player_label(runner_up)} (guessed {runner_up.value})")
    lines += ["", f"💰 Prize: {round_.prize}", "", "#BitcoinBlocks"]
    return _fit("\n".join(lines))


def _positive_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value


class RoundService:
    """Round lifecycle operations.

    Mutations take the acting principal and require it to be an administrator,
    except guess submission.
    """

    def __init__(
        self,
        *,
        explorer: BlockExplorerClient | None = None,
        announcer: AnnouncementClient | None = None,
        ledger: TransferLedger | None = None,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self._explorer = explorer
        self._announcer = announcer
        self._ledger = ledger
        self._clock = clock

    @property
    def explorer(self) -> BlockExplorerClient:
        if self._explorer is None:
            self._explorer = get_block_explorer()
        return self._explorer

    @property
    def announcer(self) -> AnnouncementClient:
        if self._announcer is None:
            self._announcer = get_announcement_client()
        return self._announcer

    @property
    def ledger(self) -> TransferLedger:
        if self._ledger is None:
            self._ledger = get_transfer_ledger()
        return self._ledger

    # --- Reads ----------------------------------------------------------------------

    @staticmethod
    def get_round(db: Session, round_id: str) -> Round:
        round_ = db.get(Round, round_id)
        if round_ is None:
            raise NotFoundError(f"Round {round_id} not found")
        return round_

    @staticmethod
    def get_active_round(db: Session) -> Round | None:
        return (
            db.query(Round)
            .filter(Round.status == ROUND_STATUS_OPEN)
            .order_by(Round.start_time.desc(), Round.created_at.desc())
            .first()
        )

    @staticmethod
    def list_rounds(
        db: Session, *, status: str | None = None, page: int = 1, limit: int = 20
    ) -> tuple[list[Round], int]:
        if status is not None and status not in ROUND_STATUSES:
            raise ValidationError(f"Unknown round status: {status}")
        query = db.query(Round)
        if status:
            query = query.filter(Round.status == status)
        total = query.count()
        page = max(1, page)
        rounds = (
            query.order_by(Round.created_at.desc(), Round.round_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rounds, total

    @classmethod
    def list_guesses(cls, db: Session, round_id: str) -> list[Guess]:
        cls.get_round(db, round_id)
        return (
            db.query(Guess)
            .filter(Guess.round_id == round_id)
            .order_by(Guess.submitted_at, Guess.id)
            .all()
        )

    @staticmethod
    def get_principal_guess(db: Session, round_id: str, principal_id: str) -> Guess | None:
        return (
            db.query(Guess)
            .filter(Guess.round_id == round_id, Guess.principal_id == principal_id)
            .first()
        )

    @staticmethod
    def round_stats(db: Session) -> dict[str, Any]:
        """Aggregate counters for the admin dashboard."""
        by_status = dict(
            db.query(Round.status, func.count(Round.id)).group_by(Round.status).all()
        )
        transfers = dict(
            db.query(TransferRecord.status, func.count(TransferRecord.id))
            .group_by(TransferRecord.status)
            .all()
        )
        total_guesses = db.query(func.count(Guess.id)).scalar() or 0
        players = db.query(func.count(func.distinct(Guess.principal_id))).scalar() or 0
        return {
            "rounds": {status: int(by_status.get(status, 0)) for status in ROUND_STATUSES},
            "total_rounds": int(sum(by_status.values())),
            "total_guesses": int(total_guesses),
            "unique_players": int(players),
            "transfers": {status: int(count) for status, count in transfers.items()},
        }

    # --- Creation -------------------------------------------------------------------

    async def create_round(
        self,
        db: Session,
        actor: str,
        *,
        round_number: int,
        target_block: int,
        duration: int,
        start_time: int | None = None,
        end_time: int | None = None,
        prize: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        announce: bool = True,
    ) -> Round:
        """Create an open round.

        ``start_time`` defaults to now and ``end_time`` to start plus
        ``duration`` minutes. Without an explicit ``prize`` the label is taken
        from the current prize configuration.
        """
        require_admin(actor)
        _positive_int("round_number", round_number)
        _positive_int("target_block", target_block)
        _positive_int("duration", duration)

        start = self._clock() if start_time is None else start_time
        end = start + duration * MILLIS_PER_MINUTE if end_time is None else end_time
        if end <= start:
            raise ValidationError("end_time must be after start_time")

        snapshot = PrizeConfigService.current(db)
        label = (prize if prize is not None else snapshot.payload.prize_label).strip()
        parsed = parse_prize(label)
        if not label or parsed is None:
            raise ValidationError("Prize must state a positive amount")
        amount, currency = parsed

        round_ = Round(
            id=str(uuid.uuid4()),
            round_number=round_number,
            start_time=start,
            end_time=end,
            duration=duration,
            target_block=target_block,
            prize=label,
            status=ROUND_STATUS_OPEN,
            round_metadata={
                **dict(metadata or {}),
                "prize_config_version": snapshot.version,
                "prize_amount": amount_text(amount),
                "currency": currency or snapshot.payload.currency_type,
            },
            created_at=self._clock(),
        )
        db.add(round_)
        db.flush()
        publish_change(db, round_, CHANGE_INSERT)
        record_action(
            db,
            actor,
            "create_round",
            {
                "round_id": round_.id,
                "round_number": round_number,
                "target_block": target_block,
                "prize": label,
            },
        )
        db.commit()
        logger.info("Round #%d (%s) created by %s", round_number, round_.id, actor)

        if announce:
            await self._announce(
                db,
                actor,
                format_round_started(round_),
                {"round_id": round_.id, "event": "round_started"},
            )
        return round_

    async def batch_create_rounds(
        self, db: Session, actor: str, drafts: Sequence[Mapping[str, Any]]
    ) -> list[BatchItemResult]:
        require_admin(actor)
        results = []
        for index, draft in enumerate(drafts):
            try:
                round_ = await self.create_round(db, actor, **draft)
            except GameError as exc:
                db.rollback()
                results.append(
                    BatchItemResult(index=index, success=False, error=exc.kind, detail=exc.message)
                )
                continue
            results.append(BatchItemResult(index=index, success=True, round_id=round_.id))
        return results

    # --- Guess intake ---------------------------------------------------------------

    def submit_guess(
        self,
        db: Session,
        round_id: str,
        principal_id: str,
        value: object,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Guess:
        """Store one guess per principal while the round is open.

        The round row is read under a shared lock held until commit, so a
        concurrent close waits for the insert or the insert sees the close.
        """
        if not principal_id:
            raise ValidationError("Principal is required")
        guess_value = coerce_guess_value(value)
        round_ = (
            db.query(Round)
            .filter(Round.id == round_id)
            .with_for_update(read=True)
            .populate_existing()
            .one_or_none()
        )
        if round_ is None:
            raise NotFoundError(f"Round {round_id} not found")

        now = self._clock()
        if round_.status != ROUND_STATUS_OPEN or now >= round_.end_time:
            raise InvalidStateError(f"Round {round_id} is not accepting guesses")

        guess = Guess(
            round_id=round_id,
            principal_id=principal_id,
            value=guess_value,
            submitted_at=now,
            display_name=display_name,
            avatar_url=avatar_url,
        )
        try:
            with db.begin_nested():
                db.add(guess)
                db.flush()
        except IntegrityError as exc:
            raise DuplicateError("A guess has already been submitted for this round") from exc

        publish_change(db, guess, CHANGE_INSERT)
        db.commit()
        logger.debug("Guess %d stored for round %s", guess.id, round_id)
        return guess

    # --- Transitions ----------------------------------------------------------------

    def _transition(
        self,
        db: Session,
        round_id: str,
        expected: str,
        values: Mapping[Any, Any],
    ) -> Round:
        result = db.execute(
            update(Round).where(Round.id == round_id, Round.status == expected).values(values)
        )
        if result.rowcount == 0:
            current = self.get_round(db, round_id)
            db.refresh(current)
            raise InvalidStateError(
                f"Round {round_id} is {current.status}, expected {expected}"
            )
        round_ = self.get_round(db, round_id)
        db.refresh(round_)
        return round_

    def close_round(self, db: Session, actor: str, round_id: str) -> Round:
        """Move an open round to closed; closing twice is an error."""
        require_admin(actor)
        round_ = self._transition(
            db, round_id, ROUND_STATUS_OPEN, {Round.status: ROUND_STATUS_CLOSED}
        )
        publish_change(db, round_, CHANGE_UPDATE)
        record_action(db, actor, "close_round", {"round_id": round_id})
        db.commit()
        logger.info("Round %s closed by %s", round_id, actor)
        return round_

    def batch_close_rounds(
        self, db: Session, actor: str, round_ids: Sequence[str]
    ) -> list[BatchItemResult]:
        require_admin(actor)
        results = []
        for index, round_id in enumerate(round_ids):
            try:
                self.close_round(db, actor, round_id)
            except GameError as exc:
                db.rollback()
                results.append(
                    BatchItemResult(
                        index=index,
                        success=False,
                        round_id=round_id,
                        error=exc.kind,
                        detail=exc.message,
                    )
                )
                continue
            results.append(BatchItemResult(index=index, success=True, round_id=round_id))
        return results

    async def compute_result(self, db: Session, actor: str, round_id: str) -> RoundResult:
        """Resolve the target block, pick the winner and request the prize transfer.

        The block is resolved before guesses are loaded, so an unmined block
        reports ``upstream_unavailable`` even for a round nobody joined.

        Raises:
            InvalidStateError: unless the round is closed, or if another caller
                finished it first.
            UpstreamUnavailableError: if the explorer keeps failing; the round
                stays closed and the failure is written to the error trail.
            NoParticipantsError: if nobody guessed; the round stays closed.
        """
        require_admin(actor)
        round_ = self.get_round(db, round_id)
        if round_.status != ROUND_STATUS_CLOSED:
            raise InvalidStateError(f"Round {round_id} is {round_.status}, expected closed")

        try:
            block = await self.explorer.resolve_block(round_.target_block)
        except UpstreamUnavailableError as exc:
            record_error(
                db,
                f"Could not resolve block {round_.target_block} for round {round_id}",
                category="network",
                severity="high",
                context={"round_id": round_id, "target_block": round_.target_block},
                exc=exc.last_error or exc,
            )
            db.commit()
            raise

        guesses = db.query(Guess).filter(Guess.round_id == round_id).all()
        if not guesses:
            raise NoParticipantsError(f"Round {round_id} has no player predictions")

        ranked = rank_guesses(guesses, block.tx_count)
        winner = ranked[0]
        runner_up = ranked[1] if len(ranked) > 1 else None
        distance = abs(winner.value - block.tx_count)
        amount = self._prize_amount(round_)
        key = settlement_idempotency_key(round_id, winner.principal_id, amount)

        metadata = {
            **dict(round_.round_metadata or {}),
            "winning_guess_id": winner.id,
            "winning_distance": distance,
            "runner_up_principal": runner_up.principal_id if runner_up else None,
            "settlement_idempotency_key": key,
        }
        round_ = self._transition(
            db,
            round_id,
            ROUND_STATUS_CLOSED,
            {
                Round.status: ROUND_STATUS_FINISHED,
                Round.actual_tx_count: block.tx_count,
                Round.block_hash: block.block_hash,
                Round.winning_principal: winner.principal_id,
                Round.round_metadata: metadata,
            },
        )
        publish_change(db, round_, CHANGE_UPDATE)
        record_action(
            db,
            actor,
            "compute_result",
            {
                "round_id": round_id,
                "actual_tx_count": block.tx_count,
                "block_hash": block.block_hash,
                "winner": winner.principal_id,
                "distance": distance,
            },
        )
        outcome = self.ledger.request_transfer(
            db,
            winner_reference=winner.principal_id,
            amount=amount,
            requesting_principal=actor,
            idempotency_key=key,
            round_id=round_id,
            commit=False,
        )
        db.commit()
        logger.info(
            "Round %s finished: %d transactions, winner %s (off by %d)",
            round_id,
            block.tx_count,
            winner.principal_id,
            distance,
        )

        if not outcome.already_processed:
            await self.ledger.dispatch(db, outcome.record)
        await self._announce(
            db,
            actor,
            format_round_results(round_, winner, runner_up),
            {"round_id": round_id, "event": "round_finished"},
        )
        return RoundResult(
            round=round_,
            winner=winner,
            runner_up=runner_up,
            distance=distance,
            transfer=outcome.record,
            transfer_already_processed=outcome.already_processed,
        )

    async def settle_round(self, db: Session, actor: str, round_id: str) -> TransferOutcome:
        """Re-issue the settlement of a finished round under its original key."""
        require_admin(actor)
        round_ = self.get_round(db, round_id)
        if round_.status != ROUND_STATUS_FINISHED or not round_.winning_principal:
            raise InvalidStateError(f"Round {round_id} has no result to settle")

        amount = self._prize_amount(round_)
        outcome = self.ledger.request_transfer(
            db,
            winner_reference=round_.winning_principal,
            amount=amount,
            requesting_principal=actor,
            idempotency_key=settlement_idempotency_key(
                round_id, round_.winning_principal, amount
            ),
            round_id=round_id,
        )
        if not outcome.already_processed:
            await self.ledger.dispatch(db, outcome.record)
        return outcome

    # --- Helpers --------------------------------------------------------------------

    @staticmethod
    def _prize_amount(round_: Round) -> str:
        stored = (round_.round_metadata or {}).get("prize_amount")
        if stored:
            return str(stored)
        parsed = parse_prize(round_.prize)
        if parsed is None:
            raise ValidationError(f"Round {round_.id} has no payable prize amount")
        return amount_text(parsed[0])

    async def _announce(
        self,
        db: Session,
        actor: str,
        message: str,
        context: dict[str, Any],
    ) -> AnnouncementResult:
        """Best-effort post; failures land in the error trail, never in the caller."""
        try:
            result = await self.announcer.post_announcement(message, actor)
        except GameError as exc:
            result = AnnouncementResult(success=False, error=exc.message)

        if not result.success and result.error != "disabled":
            record_error(
                db,
                f"Announcement failed: {result.error}",
                category="network",
                severity="medium",
                context=context,
            )
            db.commit()
        return result


class _RoundServiceSingleton:
    """Singleton wrapper for RoundService."""

    _instance: RoundService | None = None

    @classmethod
    def get_instance(cls) -> RoundService:
        if cls._instance is None:
            cls._instance = RoundService()
        return cls._instance


def get_round_service() -> RoundService:
    """Return the shared round service."""
    return _RoundServiceSingleton.get_instance()
