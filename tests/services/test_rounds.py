from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from bitcoin_blocks.models import AuditLog, ChangeEvent, ErrorLog, Guess, Round, TransferRecord
from bitcoin_blocks.services.errors import (
    DuplicateError,
    InvalidStateError,
    NoParticipantsError,
    NotFoundError,
    UnauthorizedError,
    UpstreamUnavailableError,
    ValidationError,
)
from bitcoin_blocks.services.rounds import (
    MILLIS_PER_MINUTE,
    coerce_guess_value,
    format_round_results,
    parse_prize,
    rank_guesses,
)

ADMIN = "admin-1"


async def _open_round(service, db: Session, **overrides) -> Round:
    params = {"round_number": 1, "target_block": 800_000, "duration": 10}
    params.update(overrides)
    return await service.create_round(db, ADMIN, **params)


@pytest.mark.asyncio
async def test_create_round_defaults_window_and_prize(round_service, db_session, clock, announcer):
    round_ = await _open_round(round_service, db_session)

    assert round_.status == "open"
    assert round_.start_time == clock.now
    assert round_.end_time == clock.now + 10 * MILLIS_PER_MINUTE
    assert round_.prize == "5000 $SECOND"
    assert round_.round_metadata["prize_config_version"] == 0
    assert round_.round_metadata["prize_amount"] == "5000"
    assert round_.round_metadata["currency"] == "$SECOND"
    assert len(announcer.posts) == 1
    assert "Round #1 Started" in announcer.posts[0][0]


@pytest.mark.asyncio
async def test_create_round_requires_admin(round_service, db_session):
    with pytest.raises(UnauthorizedError):
        await round_service.create_round(
            db_session, "mallory", round_number=1, target_block=800_000, duration=10
        )
    assert db_session.query(Round).count() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"round_number": 0},
        {"target_block": -5},
        {"duration": 0},
        {"start_time": 2_000, "end_time": 1_000},
        {"prize": "bragging rights"},
    ],
)
async def test_create_round_rejects_invalid_input(round_service, db_session, overrides):
    with pytest.raises(ValidationError):
        await _open_round(round_service, db_session, **overrides)
    assert db_session.query(Round).count() == 0


@pytest.mark.asyncio
async def test_create_round_survives_failed_announcement(round_service, db_session, announcer):
    announcer.succeed = False

    round_ = await _open_round(round_service, db_session)

    assert round_.status == "open"
    errors = db_session.query(ErrorLog).all()
    assert len(errors) == 1
    assert errors[0].category == "network"
    assert errors[0].context["event"] == "round_started"


@pytest.mark.asyncio
async def test_submit_guess_stores_one_guess_per_principal(round_service, db_session):
    round_ = await _open_round(round_service, db_session)

    guess = round_service.submit_guess(db_session, round_.id, "alice", 2500, display_name="alice")
    assert guess.value == 2500
    assert guess.display_name == "alice"

    with pytest.raises(DuplicateError):
        round_service.submit_guess(db_session, round_.id, "alice", 2600)

    stored = round_service.list_guesses(db_session, round_.id)
    assert [(g.principal_id, g.value) for g in stored] == [("alice", 2500)]


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [0, 20_001, -1, 2.5, True, "2500", None])
async def test_submit_guess_rejects_out_of_range_values(round_service, db_session, value):
    round_ = await _open_round(round_service, db_session)

    with pytest.raises(ValidationError):
        round_service.submit_guess(db_session, round_.id, "alice", value)
    assert db_session.query(Guess).count() == 0


def test_guess_value_bounds_are_inclusive():
    assert coerce_guess_value(1) == 1
    assert coerce_guess_value(20_000) == 20_000
    assert coerce_guess_value(1500.0) == 1500
    assert coerce_guess_value(Decimal("42")) == 42


@pytest.mark.asyncio
async def test_submit_guess_after_deadline_is_rejected(round_service, db_session, clock):
    round_ = await _open_round(round_service, db_session)
    clock.advance(10 * MILLIS_PER_MINUTE)

    with pytest.raises(InvalidStateError):
        round_service.submit_guess(db_session, round_.id, "alice", 2500)


@pytest.mark.asyncio
async def test_submit_guess_on_closed_round_is_rejected(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    round_service.close_round(db_session, ADMIN, round_.id)

    with pytest.raises(InvalidStateError):
        round_service.submit_guess(db_session, round_.id, "alice", 2500)


def test_submit_guess_unknown_round(round_service, db_session):
    with pytest.raises(NotFoundError):
        round_service.submit_guess(db_session, "missing", "alice", 2500)


@pytest.mark.asyncio
async def test_close_round_only_once(round_service, db_session):
    round_ = await _open_round(round_service, db_session)

    closed = round_service.close_round(db_session, ADMIN, round_.id)
    assert closed.status == "closed"

    with pytest.raises(InvalidStateError):
        round_service.close_round(db_session, ADMIN, round_.id)


@pytest.mark.asyncio
async def test_close_round_requires_admin(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    with pytest.raises(UnauthorizedError):
        round_service.close_round(db_session, "alice", round_.id)
    assert round_service.get_round(db_session, round_.id).status == "open"


@pytest.mark.asyncio
async def test_compute_result_picks_closest_guess_and_requests_transfer(
    round_service, db_session, clock, explorer, dispatcher, announcer
):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "alice", 2500, display_name="alice")
    clock.advance(1_000)
    round_service.submit_guess(db_session, round_.id, "bob", 2700, display_name="bob")
    clock.advance(1_000)
    round_service.submit_guess(db_session, round_.id, "carol", 4000)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.add_block(800_000, 2600)

    result = await round_service.compute_result(db_session, ADMIN, round_.id)

    # alice and bob are both 100 away; alice submitted first.
    assert result.winner.principal_id == "alice"
    assert result.runner_up is not None and result.runner_up.principal_id == "bob"
    assert result.distance == 100
    assert result.round.status == "finished"
    assert result.round.actual_tx_count == 2600
    assert result.round.block_hash == f"{800_000:064x}"
    assert result.round.winning_principal == "alice"
    assert result.round.round_metadata["winning_distance"] == 100

    transfer = result.transfer
    assert transfer is not None
    assert transfer.status == "pending"
    assert transfer.winner_reference == "alice"
    assert Decimal(transfer.amount) == Decimal("5000")
    assert transfer.round_id == round_.id
    assert result.transfer_already_processed is False
    assert [message["transfer_id"] for message in dispatcher.messages] == [transfer.id]
    assert "Round #1 Results" in announcer.posts[-1][0]


@pytest.mark.asyncio
async def test_identical_submissions_fall_back_to_insertion_order(
    round_service, db_session, explorer
):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "bob", 2700)
    round_service.submit_guess(db_session, round_.id, "alice", 2500)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.add_block(800_000, 2600)

    result = await round_service.compute_result(db_session, ADMIN, round_.id)

    assert result.winner.principal_id == "bob"


@pytest.mark.asyncio
async def test_compute_result_without_guesses_leaves_round_closed(
    round_service, db_session, explorer
):
    round_ = await _open_round(round_service, db_session)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.add_block(800_000, 2600)

    with pytest.raises(NoParticipantsError):
        await round_service.compute_result(db_session, ADMIN, round_.id)

    assert round_service.get_round(db_session, round_.id).status == "closed"
    assert explorer.resolved == [800_000]


@pytest.mark.asyncio
async def test_compute_result_requires_closed_round(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "alice", 2500)

    with pytest.raises(InvalidStateError):
        await round_service.compute_result(db_session, ADMIN, round_.id)


@pytest.mark.asyncio
async def test_compute_result_upstream_failure_is_recorded(round_service, db_session, explorer):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "alice", 2500)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.unavailable = True

    with pytest.raises(UpstreamUnavailableError):
        await round_service.compute_result(db_session, ADMIN, round_.id)

    round_ = round_service.get_round(db_session, round_.id)
    assert round_.status == "closed"
    assert round_.actual_tx_count is None
    errors = db_session.query(ErrorLog).all()
    assert len(errors) == 1
    assert errors[0].severity == "high"
    assert errors[0].context["target_block"] == 800_000
    assert "explorer down" in errors[0].stack
    assert db_session.query(TransferRecord).count() == 0


@pytest.mark.asyncio
async def test_finished_round_cannot_be_closed_or_recomputed(round_service, db_session, explorer):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "alice", 2500)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.add_block(800_000, 2600)
    await round_service.compute_result(db_session, ADMIN, round_.id)

    with pytest.raises(InvalidStateError):
        round_service.close_round(db_session, ADMIN, round_.id)
    with pytest.raises(InvalidStateError):
        await round_service.compute_result(db_session, ADMIN, round_.id)


@pytest.mark.asyncio
async def test_settle_round_replays_the_original_transfer(
    round_service, db_session, explorer, dispatcher
):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "alice", 2500)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.add_block(800_000, 2600)
    result = await round_service.compute_result(db_session, ADMIN, round_.id)

    outcome = await round_service.settle_round(db_session, "admin-2", round_.id)

    assert outcome.already_processed is True
    assert outcome.record.id == result.transfer.id
    assert db_session.query(TransferRecord).count() == 1
    assert len(dispatcher.messages) == 1


@pytest.mark.asyncio
async def test_settle_round_requires_finished_round(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    with pytest.raises(InvalidStateError):
        await round_service.settle_round(db_session, ADMIN, round_.id)


@pytest.mark.asyncio
async def test_transitions_publish_versioned_changes(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    round_service.close_round(db_session, ADMIN, round_.id)

    events = (
        db_session.query(ChangeEvent)
        .filter(ChangeEvent.table_name == "rounds", ChangeEvent.row_id == round_.id)
        .order_by(ChangeEvent.position)
        .all()
    )
    assert [(e.operation, e.row_version) for e in events] == [("INSERT", 1), ("UPDATE", 2)]
    assert events[-1].payload["status"] == "closed"


@pytest.mark.asyncio
async def test_batch_create_reports_each_item(round_service, db_session):
    results = await round_service.batch_create_rounds(
        db_session,
        ADMIN,
        [
            {"round_number": 1, "target_block": 800_000, "duration": 10, "announce": False},
            {"round_number": 2, "target_block": 800_001, "duration": 0, "announce": False},
            {"round_number": 3, "target_block": 800_002, "duration": 10, "announce": False},
        ],
    )

    assert [r.success for r in results] == [True, False, True]
    assert results[1].error == "validation_error"
    assert db_session.query(Round).count() == 2


@pytest.mark.asyncio
async def test_batch_close_reports_each_item(round_service, db_session):
    first = await _open_round(round_service, db_session, announce=False)
    second = await _open_round(round_service, db_session, round_number=2, announce=False)
    round_service.close_round(db_session, ADMIN, second.id)

    results = round_service.batch_close_rounds(db_session, ADMIN, [first.id, second.id, "missing"])

    assert [(r.success, r.error) for r in results] == [
        (True, None),
        (False, "invalid_state"),
        (False, "not_found"),
    ]


@pytest.mark.asyncio
async def test_list_rounds_filters_and_counts(round_service, db_session, clock):
    first = await _open_round(round_service, db_session, announce=False)
    clock.advance(1)
    await _open_round(round_service, db_session, round_number=2, announce=False)
    round_service.close_round(db_session, ADMIN, first.id)

    rounds, total = round_service.list_rounds(db_session, status="open")
    assert total == 1
    assert rounds[0].round_number == 2

    with pytest.raises(ValidationError):
        round_service.list_rounds(db_session, status="paused")

    active = round_service.get_active_round(db_session)
    assert active is not None and active.round_number == 2


def test_parse_prize_labels():
    assert parse_prize("5,000 $SECOND") == (Decimal("5000"), "$SECOND")
    assert parse_prize("12.5 USDC") == (Decimal("12.5"), "USDC")
    assert parse_prize("nothing") is None
    assert parse_prize("0 $SECOND") is None


def test_rank_guesses_orders_by_distance_time_then_id():
    guesses = [
        Guess(id=3, principal_id="c", value=2600, submitted_at=30),
        Guess(id=2, principal_id="b", value=2700, submitted_at=10),
        Guess(id=1, principal_id="a", value=2500, submitted_at=10),
    ]
    ranked = rank_guesses(guesses, 2600)
    assert [g.principal_id for g in ranked] == ["c", "a", "b"]


def test_results_message_is_truncated_to_cast_length():
    round_ = Round(
        round_number=7,
        target_block=800_000,
        actual_tx_count=2600,
        prize="5000 $SECOND",
    )
    winner = Guess(principal_id="w" * 400, value=2600)

    message = format_round_results(round_, winner, None)

    assert len(message) == 320
    assert message.endswith("…")


def _set_status_elsewhere(db: Session, round_id: str, status: str) -> None:
    """Commit a status change without refreshing rounds already loaded in ``db``."""
    db.execute(
        update(Round).where(Round.id == round_id).values(status=status),
        execution_options={"synchronize_session": False},
    )
    db.commit()


@pytest.mark.asyncio
async def test_compute_result_without_guesses_reports_unmined_block_first(
    round_service, db_session, explorer
):
    round_ = await _open_round(round_service, db_session)
    round_service.close_round(db_session, ADMIN, round_.id)

    with pytest.raises(UpstreamUnavailableError):
        await round_service.compute_result(db_session, ADMIN, round_.id)

    assert round_service.get_round(db_session, round_.id).status == "closed"


@pytest.mark.asyncio
async def test_close_loses_race_to_concurrent_close(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    _set_status_elsewhere(db_session, round_.id, "closed")
    assert round_.status == "open"

    with pytest.raises(InvalidStateError, match="is closed, expected open"):
        round_service.close_round(db_session, ADMIN, round_.id)

    db_session.rollback()
    assert db_session.query(AuditLog).filter(AuditLog.action == "close_round").count() == 0
    updates = db_session.query(ChangeEvent).filter(ChangeEvent.operation == "UPDATE").count()
    assert updates == 0


@pytest.mark.asyncio
async def test_guess_racing_close_is_rejected(round_service, db_session):
    round_ = await _open_round(round_service, db_session)
    _set_status_elsewhere(db_session, round_.id, "closed")
    assert round_.status == "open"

    with pytest.raises(InvalidStateError):
        round_service.submit_guess(db_session, round_.id, "alice", 2500)

    db_session.rollback()
    assert db_session.query(Guess).count() == 0


@pytest.mark.asyncio
async def test_compute_result_loses_race_to_second_caller(
    round_service, db_session, explorer, dispatcher, monkeypatch
):
    round_ = await _open_round(round_service, db_session)
    round_service.submit_guess(db_session, round_.id, "alice", 2500)
    round_service.close_round(db_session, ADMIN, round_.id)
    explorer.add_block(800_000, 2550)

    resolve = explorer.resolve_block

    async def resolve_while_another_caller_finishes(height):
        block = await resolve(height)
        _set_status_elsewhere(db_session, round_.id, "finished")
        return block

    monkeypatch.setattr(explorer, "resolve_block", resolve_while_another_caller_finishes)

    with pytest.raises(InvalidStateError, match="is finished, expected closed"):
        await round_service.compute_result(db_session, ADMIN, round_.id)

    db_session.rollback()
    round_ = round_service.get_round(db_session, round_.id)
    db_session.refresh(round_)
    assert round_.winning_principal is None
    assert round_.actual_tx_count is None
    assert db_session.query(TransferRecord).count() == 0
    assert dispatcher.messages == []
