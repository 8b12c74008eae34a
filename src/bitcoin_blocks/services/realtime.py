"""Row-level change propagation through a transactional outbox.

Every tracked write stages a :class:`ChangeEvent` in the same transaction, so
an event exists exactly when the row change committed. Each event takes the
next feed ``position`` from a single counter row that stays locked until the
writer commits, so positions become visible in increasing order and a cursor
never skips an event that commits late. Subscribers read the outbox by
cursor; reconnecting with an older cursor replays events, which gives
at-least-once delivery with per-row ordering by ``row_version``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import func, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.models import ChangeEvent, ChangeFeedCounter
from bitcoin_blocks.models.change_event import FEED_COUNTER_ID

logger = logging.getLogger(__name__)

TRACKED_TABLES = frozenset({"rounds", "guesses", "transfer_records"})


@dataclass(frozen=True)
class ChangeBatch:
    """Events after a cursor plus the cursor to resume from."""

    cursor: int
    events: list[ChangeEvent]


def row_snapshot(row: Any) -> dict[str, Any]:
    """Return a JSON-safe snapshot of a mapped row, keyed by attribute name."""
    snapshot: dict[str, Any] = {}
    for attr in inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, Decimal):
            value = format(value.normalize(), "f")
        snapshot[attr.key] = value
    return snapshot


def _locked_counter(db: Session) -> ChangeFeedCounter | None:
    return (
        db.query(ChangeFeedCounter)
        .filter(ChangeFeedCounter.id == FEED_COUNTER_ID)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )


def next_feed_position(db: Session) -> int:
    """Reserve the next feed position; the counter stays locked until commit."""
    counter = _locked_counter(db)
    if counter is None:
        try:
            with db.begin_nested():
                db.add(ChangeFeedCounter(id=FEED_COUNTER_ID, position=0))
        except IntegrityError:
            # Another writer created the row first; lock theirs below.
            logger.debug("Feed counter created concurrently")
        counter = _locked_counter(db)
        if counter is None:
            raise RuntimeError("Change feed counter row is missing")
    counter.position += 1
    db.flush()
    return counter.position


def publish_change(db: Session, row: Any, operation: str) -> ChangeEvent:
    """Stage a change event for ``row``; the caller commits.

    The row must be flushed so its primary key is known.
    """
    table_name = row.__tablename__
    if table_name not in TRACKED_TABLES:
        raise ValueError(f"Table {table_name!r} is not tracked by the change feed")

    row_id = str(inspect(row).identity[0])
    # Taking the counter lock first also serializes row_version assignment.
    position = next_feed_position(db)
    current = (
        db.query(func.max(ChangeEvent.row_version))
        .filter(ChangeEvent.table_name == table_name, ChangeEvent.row_id == row_id)
        .scalar()
    )
    event = ChangeEvent(
        position=position,
        table_name=table_name,
        row_id=row_id,
        row_version=(current or 0) + 1,
        operation=operation,
        payload=row_snapshot(row),
        created_at=epoch_millis(),
    )
    db.add(event)
    logger.debug(
        "Staged %s change for %s/%s v%d at %d",
        operation, table_name, row_id, event.row_version, position,
    )
    return event


def fetch_changes(
    db: Session,
    *,
    after: int = 0,
    tables: Iterable[str] | None = None,
    limit: int = 100,
) -> ChangeBatch:
    """Return committed events with ``position > after`` in feed order."""
    query = db.query(ChangeEvent).filter(ChangeEvent.position > after)
    if tables:
        query = query.filter(ChangeEvent.table_name.in_(list(tables)))
    events = query.order_by(ChangeEvent.position).limit(max(1, limit)).all()
    cursor = events[-1].position if events else after
    return ChangeBatch(cursor=cursor, events=events)
