"""Repair active/closed contradictions and enforce positions_closed_consistency.

Databases created by the baseline already carry the constraint; this revision
exists for position tables copied from older deployments, where rows could be
flagged active while holding a close timestamp.

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:10:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "202610010002"
down_revision = "202610010001"
branch_labels = None
depends_on = None

CONSTRAINT_NAME = "positions_closed_consistency"
CONSTRAINT_SQL = "(is_active AND closed_at IS NULL) OR (NOT is_active AND closed_at IS NOT NULL)"


def _check_constraint_names(table_name: str) -> set[str]:
    inspector = sa.inspect(op.get_bind())
    if table_name not in set(inspector.get_table_names()):
        return set()
    try:
        return {c.get("name") for c in inspector.get_check_constraints(table_name) if c.get("name")}
    except NotImplementedError:
        return set()


def upgrade() -> None:
    bind = op.get_bind()
    if "positions" not in set(sa.inspect(bind).get_table_names()):
        return

    # Active rows win: the position is still live, so drop the stray timestamp.
    op.execute(sa.text("UPDATE positions SET closed_at = NULL WHERE is_active AND closed_at IS NOT NULL"))
    op.execute(
        sa.text(
            "UPDATE positions SET closed_at = COALESCE(last_checked_at, created_at, CURRENT_TIMESTAMP) "
            "WHERE NOT is_active AND closed_at IS NULL"
        )
    )

    if CONSTRAINT_NAME in _check_constraint_names("positions"):
        return
    with op.batch_alter_table("positions") as batch_op:
        batch_op.create_check_constraint(CONSTRAINT_NAME, CONSTRAINT_SQL)


def downgrade() -> None:
    if CONSTRAINT_NAME not in _check_constraint_names("positions"):
        return
    with op.batch_alter_table("positions") as batch_op:
        batch_op.drop_constraint(CONSTRAINT_NAME, type_="check")
