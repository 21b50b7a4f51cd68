"""Engagement engine tables.

Creates badges, badge_holders, achievements, coin_transactions, streaks,
streak_history, streak_milestones, leaderboard_entries and point_awards.

Revision ID: 001_engagement_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_engagement_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Badge catalog ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badges (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) UNIQUE NOT NULL,
            description TEXT NOT NULL,
            icon VARCHAR(256) NOT NULL DEFAULT '',
            category VARCHAR(32) NOT NULL,
            rarity VARCHAR(16) NOT NULL DEFAULT 'common',
            criteria_kind VARCHAR(16) NOT NULL,
            criteria_target INTEGER NOT NULL DEFAULT 1,
            criteria_metric VARCHAR(64),
            points INTEGER NOT NULL DEFAULT 10,
            color VARCHAR(16),
            unlock_message VARCHAR(256),
            is_active BOOLEAN NOT NULL DEFAULT true,
            is_secret BOOLEAN NOT NULL DEFAULT false,
            holder_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_badges_metric
        ON badges(criteria_metric) WHERE is_active
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS badge_holders (
            id BIGSERIAL PRIMARY KEY,
            badge_id INTEGER NOT NULL REFERENCES badges(id),
            user_id VARCHAR(64) NOT NULL,
            unlocked_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT badge_holders_badge_id_user_id_key UNIQUE (badge_id, user_id)
        )
    """)

    # --- Achievements ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            badge_id INTEGER NOT NULL REFERENCES badges(id),
            progress_current INTEGER NOT NULL DEFAULT 0,
            progress_target INTEGER NOT NULL,
            is_unlocked BOOLEAN NOT NULL DEFAULT false,
            unlocked_at TIMESTAMPTZ,
            display_on_profile BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT achievements_user_id_badge_id_key UNIQUE (user_id, badge_id)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_achievements_user_id ON achievements(user_id)")

    # --- Coin ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS coin_transactions (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            seq BIGINT NOT NULL,
            type VARCHAR(16) NOT NULL,
            amount BIGINT NOT NULL,
            balance_after BIGINT NOT NULL,
            reason VARCHAR(32) NOT NULL,
            description VARCHAR(256),
            related_item_type VARCHAR(32),
            related_item_id VARCHAR(64),
            metadata JSONB NOT NULL DEFAULT '{}',
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT coin_transactions_user_id_seq_key UNIQUE (user_id, seq)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_coin_transactions_user_id ON coin_transactions(user_id)")

    # --- Streaks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS streaks (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            streak_type VARCHAR(16) NOT NULL,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_activity_date TIMESTAMPTZ NOT NULL,
            freezes_available INTEGER NOT NULL DEFAULT 3,
            freezes_used INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT streaks_user_id_streak_type_key UNIQUE (user_id, streak_type)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_streaks_user_id ON streaks(user_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS streak_history (
            id BIGSERIAL PRIMARY KEY,
            streak_id BIGINT NOT NULL REFERENCES streaks(id) ON DELETE CASCADE,
            activity_date TIMESTAMPTZ NOT NULL,
            count INTEGER NOT NULL DEFAULT 1,
            activities JSONB NOT NULL DEFAULT '[]'
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_streak_history_streak ON streak_history(streak_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS streak_milestones (
            id BIGSERIAL PRIMARY KEY,
            streak_id BIGINT NOT NULL REFERENCES streaks(id) ON DELETE CASCADE,
            days INTEGER NOT NULL,
            achieved_at TIMESTAMPTZ NOT NULL,
            reward_points INTEGER NOT NULL DEFAULT 0,
            reward_badge_id INTEGER REFERENCES badges(id),
            CONSTRAINT streak_milestones_streak_id_days_key UNIQUE (streak_id, days)
        )
    """)

    # --- Leaderboard ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            user_id VARCHAR(64) PRIMARY KEY,
            total_points BIGINT NOT NULL DEFAULT 0,
            level INTEGER NOT NULL DEFAULT 1,
            movies_watched INTEGER NOT NULL DEFAULT 0,
            series_watched INTEGER NOT NULL DEFAULT 0,
            episodes_watched INTEGER NOT NULL DEFAULT 0,
            reviews_written INTEGER NOT NULL DEFAULT 0,
            comments_posted INTEGER NOT NULL DEFAULT 0,
            badges_earned INTEGER NOT NULL DEFAULT 0,
            posts_created INTEGER NOT NULL DEFAULT 0,
            likes_received INTEGER NOT NULL DEFAULT 0,
            followers_count INTEGER NOT NULL DEFAULT 0,
            quizzes_completed INTEGER NOT NULL DEFAULT 0,
            polls_participated INTEGER NOT NULL DEFAULT 0,
            events_attended INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_leaderboard_rank
        ON leaderboard_entries(total_points DESC, user_id ASC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS point_awards (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            points INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128),
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_point_awards_user_id ON point_awards(user_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_point_awards_created_at ON point_awards(created_at)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS point_awards CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboard_entries CASCADE")
    op.execute("DROP TABLE IF EXISTS streak_milestones CASCADE")
    op.execute("DROP TABLE IF EXISTS streak_history CASCADE")
    op.execute("DROP TABLE IF EXISTS streaks CASCADE")
    op.execute("DROP TABLE IF EXISTS coin_transactions CASCADE")
    op.execute("DROP TABLE IF EXISTS achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS badge_holders CASCADE")
    op.execute("DROP TABLE IF EXISTS badges CASCADE")
