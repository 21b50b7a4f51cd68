"""Streak tracker tests — day transitions, history, freezes and milestones."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from engage.errors import InvalidStateError, NotFoundError, ValidationError
from engage.gamification.badge_catalog import get_badge_by_slug
from engage.gamification.ledger_service import get_balance
from engage.gamification.achievement_service import get_achievement
from engage.gamification.streak_service import (
    as_utc,
    get_recent_history,
    get_streak,
    get_user_streaks,
    record_activity,
    use_freeze,
)

pytestmark = pytest.mark.asyncio

UTC = timezone.utc


def day(d: int, hour: int = 12) -> datetime:
    return datetime(2024, 1, d, hour, 0, tzinfo=UTC)


class TestRecordActivity:
    """Test calendar-day transitions."""

    async def test_first_activity_starts_streak(self, db_session):
        streak = await record_activity(db_session, "user-1", "daily_login", activity="login", now=day(1))
        assert streak.current_streak == 1
        assert streak.longest_streak == 1
        assert streak.freezes_available == 3
        history = await get_recent_history(db_session, streak.id)
        assert len(history) == 1
        assert history[0].activities == ["login"]

    async def test_consecutive_day_continues(self, db_session):
        await record_activity(db_session, "user-1", now=day(1))
        streak = await record_activity(db_session, "user-1", now=day(2, hour=0))
        assert streak.current_streak == 2
        assert streak.longest_streak == 2

    async def test_same_day_is_unchanged(self, db_session):
        await record_activity(db_session, "user-1", now=day(1, hour=8))
        streak = await record_activity(db_session, "user-1", now=day(1, hour=22))
        assert streak.current_streak == 1
        assert len(await get_recent_history(db_session, streak.id)) == 2
        assert as_utc(streak.last_activity_date) == day(1, hour=22)

    async def test_same_day_history_can_be_disabled(self, db_session, monkeypatch):
        monkeypatch.setenv("ENGAGE_STREAK_LOG_SAME_DAY_ACTIVITY", "false")
        await record_activity(db_session, "user-1", now=day(1, hour=8))
        streak = await record_activity(db_session, "user-1", now=day(1, hour=22))
        assert len(await get_recent_history(db_session, streak.id)) == 1

    async def test_recent_history_is_bounded_and_newest_first(self, db_session, monkeypatch):
        monkeypatch.setenv("ENGAGE_STREAK_HISTORY_LIMIT", "3")
        for d in range(1, 6):
            streak = await record_activity(db_session, "user-1", activity=f"day-{d}", now=day(d))

        history = await get_recent_history(db_session, streak.id)
        assert [h.activities for h in history] == [["day-5"], ["day-4"], ["day-3"]]
        assert len(await get_recent_history(db_session, streak.id, limit=10)) == 5

    async def test_activity_never_reads_history(self, engine, session_factory):
        async with session_factory() as db:
            for d in range(1, 5):
                await record_activity(db, "user-1", now=day(d))
            await db.commit()

        statements: list[str] = []

        def _capture(_conn, _cursor, statement, *_args):
            statements.append(statement)

        event.listen(engine.sync_engine, "before_cursor_execute", _capture)
        try:
            async with session_factory() as db:
                await record_activity(db, "user-1", now=day(5))
                await db.commit()
        finally:
            event.remove(engine.sync_engine, "before_cursor_execute", _capture)

        assert any("INSERT INTO streak_history" in s for s in statements)
        assert not any("FROM streak_history" in s for s in statements)

    async def test_two_day_gap_resets(self, db_session):
        """2024-01-01 then 2024-01-03 resets the streak to 1."""
        await record_activity(db_session, "user-1", now=day(1))
        await record_activity(db_session, "user-1", now=day(2))
        streak = await record_activity(db_session, "user-1", now=day(4))
        assert streak.current_streak == 1
        assert streak.longest_streak == 2

    async def test_gap_from_single_day_resets(self, db_session):
        await record_activity(db_session, "user-1", now=day(1))
        streak = await record_activity(db_session, "user-1", now=day(3))
        assert streak.current_streak == 1
        assert streak.freezes_available == 3

    async def test_earlier_timestamp_does_not_move_backwards(self, db_session):
        await record_activity(db_session, "user-1", now=day(5))
        streak = await record_activity(db_session, "user-1", now=day(3))
        assert streak.current_streak == 1
        assert as_utc(streak.last_activity_date) == day(5)

    async def test_streak_types_are_independent(self, db_session):
        await record_activity(db_session, "user-1", "daily_login", now=day(1))
        await record_activity(db_session, "user-1", "daily_login", now=day(2))
        watch = await record_activity(db_session, "user-1", "daily_watch", now=day(2))
        assert watch.current_streak == 1

        streaks = await get_user_streaks(db_session, "user-1")
        assert [s.streak_type for s in streaks] == ["daily_login", "daily_watch"]

    async def test_unknown_streak_type(self, db_session):
        with pytest.raises(ValidationError):
            await record_activity(db_session, "user-1", "daily_dance", now=day(1))

    async def test_auto_freeze_policy_bridges_gap(self, db_session, monkeypatch):
        monkeypatch.setenv("ENGAGE_STREAK_AUTO_FREEZE", "true")
        await record_activity(db_session, "user-1", now=day(1))
        await record_activity(db_session, "user-1", now=day(2))
        streak = await record_activity(db_session, "user-1", now=day(4))
        assert streak.current_streak == 3
        assert streak.freezes_available == 2
        assert streak.freezes_used == 1


class TestUseFreeze:
    """Test the explicit freeze operation."""

    async def test_freeze_covers_missed_day(self, db_session):
        await record_activity(db_session, "user-1", now=day(1))
        await record_activity(db_session, "user-1", now=day(2))

        frozen = await use_freeze(db_session, "user-1", now=day(4))
        assert frozen.freezes_available == 2
        assert frozen.freezes_used == 1
        assert as_utc(frozen.last_activity_date) == day(3)

        streak = await record_activity(db_session, "user-1", now=day(4))
        assert streak.current_streak == 3

    async def test_nothing_to_cover(self, db_session):
        await record_activity(db_session, "user-1", now=day(1))
        with pytest.raises(InvalidStateError):
            await use_freeze(db_session, "user-1", now=day(2))

    async def test_no_freezes_left(self, db_session):
        streak = await record_activity(db_session, "user-1", now=day(1))
        streak.freezes_available = 0
        await db_session.flush()
        with pytest.raises(InvalidStateError):
            await use_freeze(db_session, "user-1", now=day(5))

    async def test_missing_streak(self, db_session):
        with pytest.raises(NotFoundError):
            await use_freeze(db_session, "user-1", now=day(5))
        with pytest.raises(NotFoundError):
            await get_streak(db_session, "user-1", "daily_login")


class TestMilestones:
    """Test milestone rewards."""

    async def test_seven_days_reaches_milestone_once(self, db_session):
        start = day(1)
        for offset in range(7):
            streak = await record_activity(db_session, "user-1", now=start + timedelta(days=offset))
        assert [m.days for m in streak.milestones] == [7]
        assert streak.milestones[0].reward_points == 50
        assert await get_balance(db_session, "user-1") == 50

        # Break the streak and climb back to seven
        restart = start + timedelta(days=10)
        for offset in range(7):
            streak = await record_activity(db_session, "user-1", now=restart + timedelta(days=offset))
        assert streak.current_streak == 7
        assert [m.days for m in streak.milestones] == [7]
        assert await get_balance(db_session, "user-1") == 50

    async def test_streak_badge_progress(self, seeded_db):
        """Login streak progress feeds the streak:daily_login badge."""
        db = seeded_db
        badge = await get_badge_by_slug(db, "week_streak")
        for offset in range(3):
            await record_activity(db, "user-1", now=day(1) + timedelta(days=offset))

        achievement = await get_achievement(db, "user-1", badge.id)
        assert achievement is not None
        assert achievement.progress_current == 3
        assert achievement.is_unlocked is False
