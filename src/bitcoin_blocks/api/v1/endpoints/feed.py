"""Announcement, block and change-feed endpoints."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from bitcoin_blocks.api.v1.dependencies import (
    AdminPrincipalDep,
    AnnouncementClientDep,
    BlockExplorerDep,
    SessionDep,
)
from bitcoin_blocks.core.settings import settings
from bitcoin_blocks.schemas import (
    AnnouncementCreate,
    AnnouncementResponse,
    BlockResponse,
    ChangeBatchResponse,
    ChangeEventResponse,
)
from bitcoin_blocks.services.realtime import TRACKED_TABLES, fetch_changes

logger = logging.getLogger(__name__)

router = APIRouter(tags=["feed"])


def _parse_tables(tables: str | None) -> list[str] | None:
    if not tables:
        return None
    names = [name.strip() for name in tables.split(",") if name.strip()]
    return [name for name in names if name in TRACKED_TABLES] or None


@router.post("/announcements", response_model=AnnouncementResponse)
async def post_announcement(
    announcement: AnnouncementCreate,
    admin: AdminPrincipalDep,
    announcer: AnnouncementClientDep,
) -> AnnouncementResponse:
    """Post a cast; upstream failures come back as ``success: false``."""
    result = await announcer.post_announcement(
        announcement.message, admin.principal_id, announcement.embeds
    )
    return AnnouncementResponse.model_validate(result)


@router.get("/blocks/recent", response_model=list[BlockResponse])
async def recent_blocks(
    explorer: BlockExplorerDep,
    limit: int = Query(10, ge=1, le=15),
) -> list[BlockResponse]:
    return [BlockResponse.model_validate(block) for block in await explorer.recent_blocks(limit)]


@router.get("/blocks/tip")
async def tip_height(explorer: BlockExplorerDep) -> dict[str, int]:
    return {"height": await explorer.tip_height()}


@router.get("/realtime/changes", response_model=ChangeBatchResponse)
async def pull_changes(
    db: SessionDep,
    after: int = Query(0, ge=0),
    tables: str | None = Query(None, description="Comma-separated table names"),
    limit: int = Query(100, ge=1, le=500),
) -> ChangeBatchResponse:
    """Return change events after a cursor; resume with the returned cursor."""
    batch = fetch_changes(db, after=after, tables=_parse_tables(tables), limit=limit)
    return ChangeBatchResponse.model_validate(batch)


@router.websocket("/realtime/ws")
async def stream_changes(
    websocket: WebSocket,
    db: SessionDep,
    after: int = 0,
    tables: str | None = None,
) -> None:
    """Send the backlog after ``after`` and then tail the outbox."""
    await websocket.accept()
    cursor = max(0, after)
    table_filter = _parse_tables(tables)
    batch_size = max(1, settings.realtime_batch_size)
    interval = max(0.05, settings.realtime_poll_interval_seconds)

    try:
        while True:
            batch = fetch_changes(db, after=cursor, tables=table_filter, limit=batch_size)
            messages = [
                ChangeEventResponse.model_validate(event).model_dump(mode="json")
                for event in batch.events
            ]
            # End the read transaction so the next poll sees new commits.
            db.rollback()
            for message in messages:
                await websocket.send_json(message)
            cursor = batch.cursor
            if len(messages) == batch_size:
                continue
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=interval)
            except TimeoutError:
                pass
    except WebSocketDisconnect:
        logger.debug("Change feed subscriber disconnected at cursor %d", cursor)
