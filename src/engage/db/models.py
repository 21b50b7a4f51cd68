"""ORM models for the engagement engine.

User ids are opaque strings issued by the auth layer; there is no users
table here and therefore no foreign keys to one.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, WriteOnlyMapped, mapped_column, relationship

from engage.db.base import Base, BigIntPK, JSONType

USER_ID_LENGTH = 64


# ---------------------------------------------------------------------------
# Badge catalog
# ---------------------------------------------------------------------------


class Badge(Base):
    """Badge definitions with unlock criteria and point reward."""

    __tablename__ = "badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False, default="common")
    criteria_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    criteria_target: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    criteria_metric: Mapped[str | None] = mapped_column(String(64), nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    unlock_message: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_secret: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    holder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BadgeHolder(Base):
    """Users holding a badge — UNIQUE(badge_id, user_id), rows are never removed."""

    __tablename__ = "badge_holders"
    __table_args__ = (UniqueConstraint("badge_id", "user_id", name="badge_holders_badge_id_user_id_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    badge_id: Mapped[int] = mapped_column(Integer, ForeignKey("badges.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class Achievement(Base):
    """Per (user, badge) progress record. Unlocks at most once."""

    __tablename__ = "achievements"
    __table_args__ = (UniqueConstraint("user_id", "badge_id", name="achievements_user_id_badge_id_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False, index=True)
    badge_id: Mapped[int] = mapped_column(Integer, ForeignKey("badges.id"), nullable=False)
    progress_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_target: Mapped[int] = mapped_column(Integer, nullable=False)
    is_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    display_on_profile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # NULL on an unlocked row: unlock side effects still owed
    fanout_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    badge: Mapped[Badge] = relationship("Badge", lazy="joined", innerjoin=True)


# ---------------------------------------------------------------------------
# Coin ledger
# ---------------------------------------------------------------------------


class CoinTransaction(Base):
    """Immutable coin ledger row. UNIQUE(user_id, seq) serializes writers per user."""

    __tablename__ = "coin_transactions"
    __table_args__ = (UniqueConstraint("user_id", "seq", name="coin_transactions_user_id_seq_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    related_item_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    related_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tx_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------


class Streak(Base):
    """Consecutive-day activity counter per (user, streak_type)."""

    __tablename__ = "streaks"
    __table_args__ = (UniqueConstraint("user_id", "streak_type", name="streaks_user_id_streak_type_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False, index=True)
    streak_type: Mapped[str] = mapped_column(String(16), nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    freezes_available: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    freezes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Unbounded; never loaded whole, see streak_service.get_recent_history
    history: WriteOnlyMapped[StreakHistory] = relationship(
        "StreakHistory", order_by="StreakHistory.id", passive_deletes=True
    )
    milestones: Mapped[list[StreakMilestone]] = relationship(
        "StreakMilestone", order_by="StreakMilestone.days", lazy="selectin"
    )


class StreakHistory(Base):
    """Append-only activity log for a streak."""

    __tablename__ = "streak_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    streak_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("streaks.id", ondelete="CASCADE"), nullable=False)
    activity_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    activities: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)


class StreakMilestone(Base):
    """Day-count thresholds reached by a streak."""

    __tablename__ = "streak_milestones"
    __table_args__ = (UniqueConstraint("streak_id", "days", name="streak_milestones_streak_id_days_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    streak_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("streaks.id", ondelete="CASCADE"), nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    achieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reward_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reward_badge_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("badges.id"), nullable=True)


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------


class LeaderboardEntry(Base):
    """Per-user points aggregate with mirrored activity counters. Rank is computed on read."""

    __tablename__ = "leaderboard_entries"

    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), primary_key=True)
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    movies_watched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    series_watched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    episodes_watched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reviews_written: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comments_posted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    badges_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    posts_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    likes_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    followers_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quizzes_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    polls_participated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_attended: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PointAward(Base):
    """Append-only log of leaderboard point awards with idempotency key."""

    __tablename__ = "point_awards"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(USER_ID_LENGTH), nullable=False, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
