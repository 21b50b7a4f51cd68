"""Leaderboard: point totals, derived levels and on-demand ranks.

Totals only move through `award_points`, which applies an atomic SQL
increment so concurrent awards commute. Ranks are never stored; a page's
ranks are its global positions in the (filtered) ordering
total_points DESC, user_id ASC.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engage.db.models import LeaderboardEntry, PointAward
from engage.errors import ValidationError
from engage.gamification.events import LevelUp, queue_broadcast
from engage.gamification.levels import POINTS_PER_LEVEL

logger = logging.getLogger(__name__)

TIMEFRAMES = ("all", "monthly")

STAT_FIELDS = (
    "movies_watched",
    "series_watched",
    "episodes_watched",
    "reviews_written",
    "comments_posted",
    "badges_earned",
    "posts_created",
    "likes_received",
    "followers_count",
    "quizzes_completed",
    "polls_participated",
    "events_attended",
)


def month_start(now: datetime | None = None) -> datetime:
    """First instant of the current UTC calendar month."""
    if now is None:
        now = datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def _load_entry(db: AsyncSession, user_id: str) -> LeaderboardEntry | None:
    result = await db.execute(
        select(LeaderboardEntry)
        .where(LeaderboardEntry.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_entry(db: AsyncSession, user_id: str) -> LeaderboardEntry:
    """Fetch the user's entry, creating a zeroed one if absent."""
    entry = await _load_entry(db, user_id)
    if entry is not None:
        return entry

    now = datetime.now(timezone.utc)
    try:
        async with db.begin_nested():
            db.add(LeaderboardEntry(user_id=user_id, total_points=0, level=1, created_at=now, updated_at=now))
    except IntegrityError:
        pass  # Created concurrently

    entry = await _load_entry(db, user_id)
    if entry is None:
        msg = f"Leaderboard entry for {user_id} vanished after create"
        raise RuntimeError(msg)
    return entry


async def award_points(
    db: AsyncSession,
    user_id: str,
    points: int,
    source: str,
    source_id: str | None = None,
    idempotency_key: str | None = None,
) -> tuple[LeaderboardEntry, bool]:
    """Add points to the user's total. Returns (entry, awarded).

    awarded is False when the idempotency key was already used. A level
    change is queued as LevelUp for broadcast after commit.
    """
    if points < 0:
        raise ValidationError("Points must not be negative")

    entry = await get_or_create_entry(db, user_id)
    old_level = entry.level
    now = datetime.now(timezone.utc)

    try:
        async with db.begin_nested():
            db.add(PointAward(
                user_id=user_id,
                points=points,
                source=source,
                source_id=source_id,
                idempotency_key=idempotency_key,
                created_at=now,
            ))
    except IntegrityError:
        logger.debug("Duplicate point award %s ignored", idempotency_key)
        return entry, False

    await db.execute(
        update(LeaderboardEntry)
        .where(LeaderboardEntry.user_id == user_id)
        .values(
            total_points=LeaderboardEntry.total_points + points,
            level=(LeaderboardEntry.total_points + points) // POINTS_PER_LEVEL + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    entry = await _load_entry(db, user_id)
    if entry is None:
        msg = f"Leaderboard entry for {user_id} vanished after increment"
        raise RuntimeError(msg)

    if entry.level > old_level:
        logger.info("User %s reached level %d", user_id, entry.level)
        queue_broadcast(db, LevelUp(user_id, old_level, entry.level, entry.total_points))
    return entry, True


async def increment_stat(db: AsyncSession, user_id: str, field: str, by: int = 1) -> None:
    """Atomically bump one mirrored counter."""
    if field not in STAT_FIELDS:
        raise ValidationError(f"Unknown leaderboard stat: {field}")
    await get_or_create_entry(db, user_id)
    column = getattr(LeaderboardEntry, field)
    await db.execute(
        update(LeaderboardEntry)
        .where(LeaderboardEntry.user_id == user_id)
        .values({column: column + by, LeaderboardEntry.updated_at: datetime.now(timezone.utc)})
        .execution_options(synchronize_session=False)
    )


async def mirror_stats(db: AsyncSession, user_id: str, counters: dict[str, int]) -> LeaderboardEntry:
    """Overwrite mirrored counters with the owning collaborator's values."""
    unknown = set(counters) - set(STAT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown leaderboard stat: {', '.join(sorted(unknown))}")

    entry = await get_or_create_entry(db, user_id)
    for field, value in counters.items():
        setattr(entry, field, int(value))
    entry.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return entry


async def get_user_rank(db: AsyncSession, user_id: str) -> int | None:
    """1-based all-time rank, or None if the user has no entry."""
    entry = await _load_entry(db, user_id)
    if entry is None:
        return None
    ahead = await db.execute(
        select(func.count())
        .select_from(LeaderboardEntry)
        .where(
            or_(
                LeaderboardEntry.total_points > entry.total_points,
                and_(
                    LeaderboardEntry.total_points == entry.total_points,
                    LeaderboardEntry.user_id < entry.user_id,
                ),
            )
        )
    )
    return ahead.scalar_one() + 1


async def get_user_entry(db: AsyncSession, user_id: str) -> tuple[LeaderboardEntry, int]:
    """Fetch-or-create the user's entry and return it with its all-time rank."""
    entry = await get_or_create_entry(db, user_id)
    rank = await get_user_rank(db, user_id)
    return entry, rank or 1


async def get_ranked_page(
    db: AsyncSession,
    page: int = 1,
    limit: int = 50,
    timeframe: str = "all",
    min_level: int | None = None,
    now: datetime | None = None,
) -> tuple[list[dict], int]:
    """Return ([{rank, entry, points}], total) for one leaderboard page.

    For timeframe "monthly", points are this month's awards and only users
    with awards this month are listed.
    """
    if timeframe not in TIMEFRAMES:
        raise ValidationError(f"Unknown timeframe: {timeframe}")
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")

    if timeframe == "all":
        points_col = LeaderboardEntry.total_points
        base = select(LeaderboardEntry, points_col.label("points"))
        if min_level is not None:
            base = base.where(LeaderboardEntry.level >= min_level)
    else:
        monthly = (
            select(PointAward.user_id, func.sum(PointAward.points).label("points"))
            .where(PointAward.created_at >= month_start(now))
            .group_by(PointAward.user_id)
            .subquery()
        )
        points_col = monthly.c.points
        base = select(LeaderboardEntry, points_col.label("points")).join(
            monthly, monthly.c.user_id == LeaderboardEntry.user_id
        )
        if min_level is not None:
            base = base.where(LeaderboardEntry.level >= min_level)

    total_result = await db.execute(select(func.count()).select_from(base.subquery()))
    total = total_result.scalar_one()

    offset = (page - 1) * limit
    result = await db.execute(
        base.order_by(points_col.desc(), LeaderboardEntry.user_id.asc()).offset(offset).limit(limit)
    )
    rows = [
        {"rank": offset + index + 1, "entry": row[0], "points": int(row[1] or 0)}
        for index, row in enumerate(result.all())
    ]
    return rows, total
