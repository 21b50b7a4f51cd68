"""Achievement progress tracking with exactly-once unlocks.

The unlock is claimed with a conditional UPDATE (is_unlocked false -> true);
only the caller whose UPDATE matched a row publishes AchievementUnlocked,
so holder, coin and point side effects cannot be applied twice. Once the
handlers have run, fanout_completed_at is stamped; the repair job only
revisits unlocked rows that still lack it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import get_settings
from engage.db.models import Achievement, Badge
from engage.errors import InvalidStateError, ValidationError
from engage.gamification.badge_catalog import get_badge
from engage.gamification.events import AchievementUnlocked, EventBus, get_event_bus
from engage.gamification.lanes import acquire_lane

logger = logging.getLogger(__name__)


async def get_achievement(db: AsyncSession, user_id: str, badge_id: int, for_update: bool = False) -> Achievement | None:
    """Fetch the (user, badge) achievement, optionally row-locked."""
    query = (
        select(Achievement)
        .where(Achievement.user_id == user_id, Achievement.badge_id == badge_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update(of=Achievement)
    result = await db.execute(query)
    return result.unique().scalar_one_or_none()


async def get_or_create_achievement(db: AsyncSession, user_id: str, badge: Badge) -> Achievement:
    """Fetch the achievement or create it with the badge's current target."""
    achievement = await get_achievement(db, user_id, badge.id, for_update=True)
    if achievement is not None:
        return achievement

    now = datetime.now(timezone.utc)
    try:
        async with db.begin_nested():
            db.add(Achievement(
                user_id=user_id,
                badge_id=badge.id,
                progress_current=0,
                progress_target=badge.criteria_target,
                is_unlocked=False,
                created_at=now,
                updated_at=now,
            ))
    except IntegrityError:
        logger.debug("Achievement (%s, %d) created concurrently", user_id, badge.id)

    achievement = await get_achievement(db, user_id, badge.id, for_update=True)
    if achievement is None:
        msg = f"Achievement ({user_id}, {badge.id}) vanished after create"
        raise RuntimeError(msg)
    return achievement


async def _claim_unlock(db: AsyncSession, achievement_id: int, now: datetime) -> bool:
    """Atomically flip is_unlocked false -> true. True only for the winning caller."""
    result = await db.execute(
        update(Achievement)
        .where(Achievement.id == achievement_id, Achievement.is_unlocked.is_(False))
        .values(is_unlocked=True, unlocked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def unlock_event(achievement: Achievement, badge: Badge) -> AchievementUnlocked:
    return AchievementUnlocked(
        user_id=achievement.user_id,
        achievement_id=achievement.id,
        badge_id=badge.id,
        badge_slug=badge.slug,
        badge_name=badge.name,
        rarity=badge.rarity,
        points=badge.points,
        unlocked_at=achievement.unlocked_at or datetime.now(timezone.utc),
    )


async def record_progress(
    db: AsyncSession,
    user_id: str,
    badge_id: int,
    progress: int,
    bus: EventBus | None = None,
) -> tuple[Achievement, bool]:
    """Set absolute progress toward a badge. Returns (achievement, unlocked_now).

    Calls after the unlock keep updating progress but never repeat the
    unlock side effects.
    """
    if progress < 0:
        raise ValidationError("Progress must not be negative")

    badge = await get_badge(db, badge_id)
    if not badge.is_active:
        raise InvalidStateError("Badge is not active")

    await acquire_lane(db, user_id)
    achievement = await get_or_create_achievement(db, user_id, badge)
    now = datetime.now(timezone.utc)
    achievement.progress_current = progress
    achievement.updated_at = now
    await db.flush()

    unlocked_now = False
    if (
        not achievement.is_unlocked
        and achievement.progress_current >= achievement.progress_target
        and await _claim_unlock(db, achievement.id, now)
    ):
        unlocked_now = True
        achievement.is_unlocked = True
        achievement.unlocked_at = now
        logger.info("User %s unlocked badge %s", user_id, badge.slug)
        await (bus or get_event_bus()).publish(db, unlock_event(achievement, badge))
        achievement.fanout_completed_at = datetime.now(timezone.utc)

    await db.flush()
    return achievement, unlocked_now


async def get_user_achievements(db: AsyncSession, user_id: str) -> dict:
    """All achievements of a user (unlocked first, newest first) with summary stats."""
    result = await db.execute(
        select(Achievement)
        .where(Achievement.user_id == user_id)
        .order_by(Achievement.is_unlocked.desc(), Achievement.created_at.desc(), Achievement.id.desc())
    )
    achievements = list(result.unique().scalars().all())
    unlocked = sum(1 for a in achievements if a.is_unlocked)
    return {
        "achievements": achievements,
        "stats": {
            "total": len(achievements),
            "unlocked": unlocked,
            "in_progress": len(achievements) - unlocked,
        },
    }


async def redeliver_unlocks(
    db: AsyncSession,
    user_id: str | None = None,
    bus: EventBus | None = None,
    include_completed: bool = False,
    limit: int | None = None,
) -> int:
    """Replay AchievementUnlocked for unlocked achievements whose fan-out is unfinished.

    With include_completed, every unlocked achievement in scope is replayed;
    handlers are idempotent, so completed fan-outs are untouched. At most
    `limit` rows (default: unlock_redelivery_batch_size) are replayed per
    call, oldest first. Nothing is re-broadcast on pub/sub. Returns the
    number replayed.
    """
    if limit is None:
        limit = get_settings().unlock_redelivery_batch_size

    query = select(Achievement).where(Achievement.is_unlocked.is_(True))
    if not include_completed:
        query = query.where(Achievement.fanout_completed_at.is_(None))
    if user_id is not None:
        query = query.where(Achievement.user_id == user_id)
    result = await db.execute(query.order_by(Achievement.id).limit(limit))
    achievements = list(result.unique().scalars().all())

    bus = bus or get_event_bus()
    for achievement in achievements:
        await acquire_lane(db, achievement.user_id)
        await bus.publish(db, unlock_event(achievement, achievement.badge), announce=False)
        achievement.fanout_completed_at = datetime.now(timezone.utc)
    await db.flush()

    if achievements:
        logger.info("Redelivered %d unlock events", len(achievements))
    return len(achievements)
