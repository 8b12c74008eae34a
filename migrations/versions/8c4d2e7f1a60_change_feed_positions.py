"""change feed positions

Revision ID: 8c4d2e7f1a60
Revises: 5b1f0c2a9d3e
Create Date: 2026-10-19 10:30:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "8c4d2e7f1a60"
down_revision: Union[str, Sequence[str], None] = "5b1f0c2a9d3e"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add the commit-ordered feed position and its counter row."""
    op.create_table(
        "change_feed_counter",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("position", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    with op.batch_alter_table("change_events") as batch_op:
        batch_op.add_column(sa.Column("position", sa.BigInteger(), nullable=True))

    # Existing events were committed before positions existed; keep their id order.
    op.execute("UPDATE change_events SET position = id")
    op.execute(
        "INSERT INTO change_feed_counter (id, position) "
        "SELECT 1, COALESCE(MAX(id), 0) FROM change_events"
    )

    with op.batch_alter_table("change_events") as batch_op:
        batch_op.alter_column("position", existing_type=sa.BigInteger(), nullable=False)
        batch_op.create_unique_constraint("uq_change_events_position", ["position"])


def downgrade() -> None:
    """Return to id-ordered change events."""
    with op.batch_alter_table("change_events") as batch_op:
        batch_op.drop_constraint("uq_change_events_position", type_="unique")
        batch_op.drop_column("position")
    op.drop_table("change_feed_counter")
