"""Daily streak tracking: calendar-day transitions, freezes and milestones."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import get_settings
from engage.db.models import Streak, StreakHistory, StreakMilestone
from engage.errors import InvalidStateError, NotFoundError, ValidationError
from engage.gamification.events import EventBus, StreakMilestoneReached, get_event_bus
from engage.gamification.lanes import acquire_lane

logger = logging.getLogger(__name__)

STREAK_TYPES = ("daily_login", "daily_watch", "daily_review")


def get_streak_timezone() -> tzinfo:
    name = get_settings().streak_timezone
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_date(dt: datetime, tz: tzinfo | None = None) -> date:
    """Calendar date of dt in the streak timezone."""
    return as_utc(dt).astimezone(tz or get_streak_timezone()).date()


def days_between(last: datetime, now: datetime, tz: tzinfo | None = None) -> int:
    """Whole calendar days from last to now (midnight-to-midnight, DST safe)."""
    return (local_date(now, tz) - local_date(last, tz)).days


# --- Freeze policies ---


class FreezePolicy:
    """Decides how many freezes to spend automatically when days were missed."""

    def freezes_to_apply(self, streak: Streak, days_diff: int) -> int:
        raise NotImplementedError


class ManualFreezePolicy(FreezePolicy):
    """Never spends freezes on its own; callers use `use_freeze`."""

    def freezes_to_apply(self, streak: Streak, days_diff: int) -> int:
        return 0


class AutoFreezePolicy(FreezePolicy):
    """Bridges the gap if every missed day can be covered by a freeze."""

    def freezes_to_apply(self, streak: Streak, days_diff: int) -> int:
        missed = days_diff - 1
        if 0 < missed <= streak.freezes_available:
            return missed
        return 0


def get_freeze_policy() -> FreezePolicy:
    if get_settings().streak_auto_freeze:
        return AutoFreezePolicy()
    return ManualFreezePolicy()


# --- Queries ---


def _validate_type(streak_type: str) -> None:
    if streak_type not in STREAK_TYPES:
        raise ValidationError(f"Unknown streak type: {streak_type}")


async def _load_streak(db: AsyncSession, user_id: str, streak_type: str) -> Streak | None:
    result = await db.execute(
        select(Streak)
        .where(Streak.user_id == user_id, Streak.streak_type == streak_type)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_streak(db: AsyncSession, user_id: str, streak_type: str) -> Streak:
    _validate_type(streak_type)
    streak = await _load_streak(db, user_id, streak_type)
    if streak is None:
        raise NotFoundError("Streak not found")
    return streak


async def get_user_streaks(db: AsyncSession, user_id: str) -> list[Streak]:
    result = await db.execute(
        select(Streak).where(Streak.user_id == user_id).order_by(Streak.streak_type)
    )
    return list(result.scalars().all())


async def get_recent_history(db: AsyncSession, streak_id: int, limit: int | None = None) -> list[StreakHistory]:
    """Newest history entries of a streak, at most `limit` (default: streak_history_limit)."""
    if limit is None:
        limit = get_settings().streak_history_limit
    result = await db.execute(
        select(StreakHistory)
        .where(StreakHistory.streak_id == streak_id)
        .order_by(StreakHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# --- Transitions ---


def _append_history(db: AsyncSession, streak: Streak, now: datetime, activity: str | None) -> None:
    db.add(StreakHistory(
        streak_id=streak.id,
        activity_date=now,
        count=1,
        activities=[activity] if activity else [],
    ))


async def _create_streak(
    db: AsyncSession, user_id: str, streak_type: str, now: datetime, activity: str | None
) -> Streak | None:
    """Insert a fresh streak. Returns None if another writer created it first."""
    streak = Streak(
        user_id=user_id,
        streak_type=streak_type,
        current_streak=1,
        longest_streak=1,
        last_activity_date=now,
        freezes_available=get_settings().streak_initial_freezes,
        freezes_used=0,
        is_active=True,
        created_at=now,
        updated_at=now,
        milestones=[],
    )
    try:
        async with db.begin_nested():
            db.add(streak)
    except IntegrityError:
        return None
    _append_history(db, streak, now, activity)
    return streak


def _advance(streak: Streak, days_diff: int, policy: FreezePolicy) -> str:
    """Apply the day-difference transition. Returns the transition name."""
    if days_diff <= 0:
        return "same_day"

    if days_diff > 1:
        frozen = policy.freezes_to_apply(streak, days_diff)
        if frozen:
            streak.freezes_available -= frozen
            streak.freezes_used += frozen
            logger.info("Spent %d freeze(s) on %s streak of %s", frozen, streak.streak_type, streak.user_id)
            days_diff = 1

    if days_diff == 1:
        streak.current_streak += 1
        streak.longest_streak = max(streak.longest_streak, streak.current_streak)
        return "continued"

    logger.info(
        "%s streak of %s broken at %d days", streak.streak_type, streak.user_id, streak.current_streak
    )
    streak.current_streak = 1
    return "reset"


async def _check_milestones(db: AsyncSession, streak: Streak, now: datetime, bus: EventBus) -> list[int]:
    """Record newly reached milestone thresholds and publish them."""
    settings = get_settings()
    reached = {m.days for m in streak.milestones}
    new: list[int] = []

    for days in sorted(settings.streak_milestones):
        if streak.current_streak < days or days in reached:
            continue
        milestone = StreakMilestone(
            days=days,
            achieved_at=now,
            reward_points=settings.streak_milestone_reward_coins,
        )
        streak.milestones.append(milestone)
        await db.flush()
        new.append(days)
        await bus.publish(
            db,
            StreakMilestoneReached(
                user_id=streak.user_id,
                streak_id=streak.id,
                streak_type=streak.streak_type,
                days=days,
                reward_points=milestone.reward_points,
                achieved_at=now,
            ),
        )
    return new


async def record_activity(
    db: AsyncSession,
    user_id: str,
    streak_type: str = "daily_login",
    activity: str | None = None,
    now: datetime | None = None,
    bus: EventBus | None = None,
    evaluate_badges: bool = True,
) -> Streak:
    """Register one activity for (user, streak_type) and return the updated streak.

    Transitions by calendar days since the last activity:
    0 -> unchanged, 1 -> +1, more -> freeze policy or reset to 1.
    """
    _validate_type(streak_type)
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    settings = get_settings()
    bus = bus or get_event_bus()

    await acquire_lane(db, user_id)
    streak = await _load_streak(db, user_id, streak_type)
    if streak is None:
        streak = await _create_streak(db, user_id, streak_type, now, activity)
        if streak is not None:
            logger.info("Started %s streak for %s", streak_type, user_id)
            await _finish(db, streak, now, bus, evaluate_badges)
            return streak
        streak = await _load_streak(db, user_id, streak_type)
        if streak is None:
            msg = f"{streak_type} streak for {user_id} vanished after create"
            raise RuntimeError(msg)

    last = as_utc(streak.last_activity_date)
    days_diff = days_between(last, now)
    transition = _advance(streak, days_diff, get_freeze_policy())

    if now > last:
        streak.last_activity_date = now
    if transition != "same_day" or settings.streak_log_same_day_activity:
        _append_history(db, streak, now, activity)
    streak.updated_at = now

    await _finish(db, streak, now, bus, evaluate_badges)
    return streak


async def _finish(db: AsyncSession, streak: Streak, now: datetime, bus: EventBus, evaluate_badges: bool) -> None:
    await db.flush()
    await _check_milestones(db, streak, now, bus)
    if evaluate_badges:
        from engage.gamification.trigger_engine import TriggerEngine

        engine = TriggerEngine(db, bus)
        await engine.evaluate_metric(streak.user_id, f"streak:{streak.streak_type}", streak.current_streak)


async def use_freeze(
    db: AsyncSession,
    user_id: str,
    streak_type: str = "daily_login",
    now: datetime | None = None,
) -> Streak:
    """Spend one freeze to cover one missed day.

    Moves last_activity_date forward a day so the next activity continues
    the streak instead of resetting it.
    """
    _validate_type(streak_type)
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)

    await acquire_lane(db, user_id)
    streak = await get_streak(db, user_id, streak_type)
    if days_between(as_utc(streak.last_activity_date), now) < 2:
        raise InvalidStateError("No missed day to cover")
    if streak.freezes_available <= 0:
        raise InvalidStateError("No freezes available")

    streak.last_activity_date = as_utc(streak.last_activity_date) + timedelta(days=1)
    streak.freezes_available -= 1
    streak.freezes_used += 1
    streak.updated_at = now
    await db.flush()
    logger.info("User %s froze their %s streak (%d left)", user_id, streak_type, streak.freezes_available)
    return streak
