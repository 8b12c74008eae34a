"""Background driver that closes and resolves rounds as blocks are mined.

The round state machine has no timers of its own; this worker polls the
explorer's tip height and calls the same service operations an
administrator would, acting as the configured automation principal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.db.session import SessionLocal
from bitcoin_blocks.db.time import epoch_millis
from bitcoin_blocks.models import Round
from bitcoin_blocks.models.round import ROUND_STATUS_CLOSED, ROUND_STATUS_OPEN
from bitcoin_blocks.services.errors import (
    GameError,
    InvalidStateError,
    NoParticipantsError,
    UpstreamUnavailableError,
)
from bitcoin_blocks.services.gateway import BlockExplorerClient, get_block_explorer
from bitcoin_blocks.services.rounds import RoundService, get_round_service

# Configure logger for this module
logger = logging.getLogger(__name__)


@dataclass
class WatcherReport:
    """What a single tick did."""

    tip_height: int | None = None
    closed: list[str] = field(default_factory=list)
    finished: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


class BlockWatcher:
    """Periodically closes expired rounds and computes results for mined blocks."""

    def __init__(
        self,
        service: RoundService | None = None,
        explorer: BlockExplorerClient | None = None,
        *,
        principal_id: str | None = None,
        interval_seconds: float | None = None,
        clock: Callable[[], int] = epoch_millis,
        db_session: Session | None = None,
    ) -> None:
        self.service = service or get_round_service()
        self.explorer = explorer or get_block_explorer()
        self.principal_id = principal_id or settings.automation_principal_id
        self.interval = max(
            0.1,
            float(interval_seconds or settings.block_watcher_interval_seconds),
        )
        self._clock = clock
        self._db_session = db_session
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background polling loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except UpstreamUnavailableError as e:
                logger.warning("BlockWatcher could not reach the explorer: %s", e)
            except (OSError, ConnectionError) as e:
                logger.warning("BlockWatcher encountered network error: %s", e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)

    async def tick(self) -> WatcherReport:
        """Run one pass over open and closed rounds."""
        report = WatcherReport()
        report.tip_height = await self.explorer.tip_height()

        if self._db_session is not None:
            await self._process(self._db_session, report)
        else:
            with SessionLocal() as db:
                await self._process(db, report)
        return report

    async def _process(self, db: Session, report: WatcherReport) -> None:
        tip = report.tip_height or 0
        now = self._clock()

        open_rounds = (
            db.query(Round.id, Round.end_time, Round.target_block)
            .filter(Round.status == ROUND_STATUS_OPEN)
            .all()
        )
        for round_id, end_time, target_block in open_rounds:
            if end_time > now and target_block > tip:
                continue
            try:
                self.service.close_round(db, self.principal_id, round_id)
            except InvalidStateError:
                db.rollback()
                continue
            report.closed.append(round_id)

        closed_rounds = (
            db.query(Round.id)
            .filter(Round.status == ROUND_STATUS_CLOSED, Round.target_block <= tip)
            .order_by(Round.target_block)
            .all()
        )
        for (round_id,) in closed_rounds:
            try:
                await self.service.compute_result(db, self.principal_id, round_id)
            except NoParticipantsError as e:
                report.skipped[round_id] = e.kind
                logger.info("Round %s has no guesses; leaving it closed", round_id)
                continue
            except UpstreamUnavailableError as e:
                report.skipped[round_id] = e.kind
                logger.warning("Result for round %s deferred: %s", round_id, e)
                continue
            except GameError as e:
                db.rollback()
                report.skipped[round_id] = e.kind
                logger.warning("Result for round %s skipped: %s", round_id, e)
                continue
            report.finished.append(round_id)
