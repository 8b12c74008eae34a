# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator, Sequence
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-bitcoin-blocks")
os.environ.setdefault("ADMIN_PRINCIPAL_IDS", "admin-1,admin-2")
os.environ.setdefault("PAYMENT_WORKER_PRINCIPAL_IDS", "payment-worker")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ANNOUNCE_ENABLED", "false")

from bitcoin_blocks.api.v1.dependencies import (
    get_announcement_client_dep,
    get_block_explorer_dep,
    get_round_service_dep,
    get_transfer_ledger_dep,
)
from bitcoin_blocks.core.security import create_access_token
from bitcoin_blocks.db.session import Base, enable_sqlite_savepoints
from bitcoin_blocks.db.session import get_db as app_get_session
from bitcoin_blocks.main import app as fastapi_app
from bitcoin_blocks.services.errors import UpstreamUnavailableError, ValidationError
from bitcoin_blocks.services.gateway import AnnouncementResult, BlockInfo
from bitcoin_blocks.services.rate_limit import get_rate_limiter
from bitcoin_blocks.services.rounds import RoundService
from bitcoin_blocks.services.settlement import TransferLedger

TEST_DB_URL = "sqlite://"

ADMIN_ID = "admin-1"
OTHER_ADMIN_ID = "admin-2"
WORKER_ID = "payment-worker"

START_MILLIS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MILLIS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class FakeExplorer:
    """In-memory stand-in for the block explorer client."""

    def __init__(self) -> None:
        self.blocks: dict[int, BlockInfo] = {}
        self.tip = 0
        self.unavailable = False
        self.resolved: list[int] = []

    def add_block(self, height: int, tx_count: int) -> BlockInfo:
        info = BlockInfo(height=height, block_hash=f"{height:064x}", tx_count=tx_count)
        self.blocks[height] = info
        self.tip = max(self.tip, height)
        return info

    async def resolve_block(self, height: int) -> BlockInfo:
        if height <= 0:
            raise ValidationError("Block height must be positive")
        self.resolved.append(height)
        if self.unavailable or height not in self.blocks:
            raise UpstreamUnavailableError(
                f"Block {height} unavailable",
                last_error=ConnectionError("explorer down"),
            )
        return self.blocks[height]

    async def tip_height(self) -> int:
        if self.unavailable:
            raise UpstreamUnavailableError("Tip unavailable")
        return self.tip

    async def recent_blocks(self, limit: int = 10) -> list[BlockInfo]:
        return sorted(self.blocks.values(), key=lambda block: -block.height)[:limit]

    async def health_check(self) -> dict[str, Any]:
        return {"healthy": not self.unavailable, "tip_height": self.tip, "metrics": {}}

    async def close(self) -> None:
        return None


class FakeAnnouncer:
    """Records announcements instead of posting them."""

    def __init__(self, *, succeed: bool = True) -> None:
        self.succeed = succeed
        self.posts: list[tuple[str, str]] = []

    async def post_announcement(
        self, message: str, author: str, embeds: Sequence[str] | None = None
    ) -> AnnouncementResult:
        self.posts.append((message, author))
        if not self.succeed:
            return AnnouncementResult(success=False, error="upstream down", attempts=3)
        return AnnouncementResult(success=True, cast_hash=f"0x{len(self.posts):040x}")

    async def close(self) -> None:
        return None


class RecordingDispatcher:
    """Transfer dispatcher that remembers every hand-off."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def dispatch(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    async def close(self) -> None:
        return None


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    """Session whose commits are real; tables are emptied afterwards."""
    TestingSession = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(autouse=True)
def reset_rate_limits() -> Iterator[None]:
    get_rate_limiter().reset()
    yield
    get_rate_limiter().reset()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def explorer() -> FakeExplorer:
    return FakeExplorer()


@pytest.fixture()
def announcer() -> FakeAnnouncer:
    return FakeAnnouncer()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def ledger(dispatcher: RecordingDispatcher, clock: FakeClock) -> TransferLedger:
    return TransferLedger(dispatcher, clock=clock)


@pytest.fixture()
def round_service(
    explorer: FakeExplorer,
    announcer: FakeAnnouncer,
    ledger: TransferLedger,
    clock: FakeClock,
) -> RoundService:
    return RoundService(
        explorer=explorer,  # type: ignore[arg-type]
        announcer=announcer,  # type: ignore[arg-type]
        ledger=ledger,
        clock=clock,
    )


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def override_services(
    app: FastAPI,
    round_service: RoundService,
    ledger: TransferLedger,
    explorer: FakeExplorer,
    announcer: FakeAnnouncer,
) -> Iterator[None]:
    """Route the API through the in-memory collaborators."""
    overrides = {
        get_round_service_dep: lambda: round_service,
        get_transfer_ledger_dep: lambda: ledger,
        get_block_explorer_dep: lambda: explorer,
        get_announcement_client_dep: lambda: announcer,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI, override_services: None) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


def auth_headers(principal_id: str, **claims: str) -> dict[str, str]:
    token = create_access_token(principal_id, claims or None)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return auth_headers(ADMIN_ID)


@pytest.fixture()
def worker_headers() -> dict[str, str]:
    return auth_headers(WORKER_ID)


@pytest.fixture()
def player_headers() -> dict[str, str]:
    return auth_headers("alice", name="alice", pfp="https://example.com/alice.png")


@pytest.fixture()
def make_headers() -> Any:
    """Return the bearer-header factory for arbitrary principals."""
    return auth_headers
