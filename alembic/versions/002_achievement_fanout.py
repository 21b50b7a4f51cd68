"""Track completed unlock fan-out on achievements.

Unlocked rows without fanout_completed_at are picked up by the repair
job. Existing rows start NULL, so the first runs replay them once in
batches.

Revision ID: 002_achievement_fanout
Revises: 001_engagement_tables
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002_achievement_fanout"
down_revision: str | None = "001_engagement_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("ALTER TABLE achievements ADD COLUMN IF NOT EXISTS fanout_completed_at TIMESTAMPTZ")
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_achievements_fanout_pending
        ON achievements(id) WHERE is_unlocked AND fanout_completed_at IS NULL
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_achievements_fanout_pending")
    op.execute("ALTER TABLE achievements DROP COLUMN IF EXISTS fanout_completed_at")
