# tests/test_migrations.py
from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect

from bitcoin_blocks.db.session import Base
from bitcoin_blocks.scripts.migrate import run_upgrade_head


def test_initial_migration_matches_models(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_file = tmp_path / "migrated.db"
    monkeypatch.setenv("ALEMBIC_URL", f"sqlite:///{db_file}")

    run_upgrade_head()

    engine = create_engine(f"sqlite:///{db_file}")
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        assert set(Base.metadata.tables) <= tables
        for name, table in Base.metadata.tables.items():
            migrated = {column["name"] for column in inspector.get_columns(name)}
            assert migrated == {column.name for column in table.columns}, name
        unique = {c["name"] for c in inspector.get_unique_constraints("guesses")}
        assert "uq_guesses_round_principal" in unique
    finally:
        engine.dispose()
