"""Concurrent writers — separate sessions racing on the same user."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from engage.db.models import Badge, BadgeHolder, CoinTransaction, LeaderboardEntry, PointAward, Streak
from engage.gamification.achievement_service import _claim_unlock, get_achievement, record_progress
from engage.gamification.badge_catalog import get_badge_by_slug
from engage.gamification.leaderboard_service import award_points
from engage.gamification.ledger_service import get_balance, record_transaction, verify_balance
from engage.gamification.streak_service import record_activity

pytestmark = pytest.mark.asyncio


async def _in_own_session(factory, operation):
    async with factory() as db:
        result = await operation(db)
        await db.commit()
        return result


async def _race(factory, *operations):
    return await asyncio.gather(*(_in_own_session(factory, op) for op in operations))


async def _badge(factory, slug: str) -> Badge:
    async with factory() as db:
        return await get_badge_by_slug(db, slug)


class TestUnlockRace:
    """Test that racing progress updates unlock a badge once."""

    async def test_two_writers_crossing_threshold(self, shared_session_factory):
        factory = shared_session_factory
        badge = await _badge(factory, "binge_watcher")

        results = await _race(
            factory,
            lambda db: record_progress(db, "user-1", badge.id, 10),
            lambda db: record_progress(db, "user-1", badge.id, 12),
        )

        assert [unlocked for _, unlocked in results].count(True) == 1
        async with factory() as db:
            holder_count = await db.execute(select(Badge.holder_count).where(Badge.id == badge.id))
            assert holder_count.scalar_one() == 1
            holders = await db.execute(
                select(func.count()).select_from(BadgeHolder).where(BadgeHolder.badge_id == badge.id)
            )
            assert holders.scalar_one() == 1
            credits = await db.execute(
                select(func.count()).select_from(CoinTransaction).where(CoinTransaction.user_id == "user-1")
            )
            assert credits.scalar_one() == 1
            assert await get_balance(db, "user-1") == badge.points
            assert await verify_balance(db, "user-1") is True

    async def test_many_users_each_unlock_once(self, shared_session_factory):
        factory = shared_session_factory
        badge = await _badge(factory, "first_watch")
        users = [f"user-{i}" for i in range(6)]

        await _race(factory, *(lambda db, u=u: record_progress(db, u, badge.id, 1) for u in users))

        async with factory() as db:
            holder_count = await db.execute(select(Badge.holder_count).where(Badge.id == badge.id))
            assert holder_count.scalar_one() == len(users)
            for user_id in users:
                assert await get_balance(db, user_id) == badge.points

    async def test_stale_claim_loses(self, shared_session_factory):
        factory = shared_session_factory
        badge = await _badge(factory, "binge_watcher")
        await _in_own_session(factory, lambda db: record_progress(db, "user-1", badge.id, 3))

        async with factory() as db:
            achievement = await get_achievement(db, "user-1", badge.id)
            now = datetime.now(timezone.utc)
            assert await _claim_unlock(db, achievement.id, now) is True
            assert await _claim_unlock(db, achievement.id, now) is False


class TestLedgerRace:
    """Test that racing appends keep one unbroken chain."""

    async def test_concurrent_appends_chain(self, shared_session_factory):
        factory = shared_session_factory
        amounts = [10, 25, -5, 40, 3, -8, 12, 7]

        await _race(
            factory,
            *(
                lambda db, a=a: record_transaction(
                    db, "user-1", "earn" if a > 0 else "spend", a, "bonus" if a > 0 else "item_purchase"
                )
                for a in amounts
            ),
        )

        async with factory() as db:
            assert await verify_balance(db, "user-1") is True
            assert await get_balance(db, "user-1") == sum(amounts)
            seqs = await db.execute(
                select(CoinTransaction.seq).where(CoinTransaction.user_id == "user-1").order_by(CoinTransaction.seq)
            )
            assert list(seqs.scalars()) == list(range(1, len(amounts) + 1))

    async def test_concurrent_idempotent_appends_write_once(self, shared_session_factory):
        factory = shared_session_factory

        results = await _race(
            factory,
            *(
                lambda db: record_transaction(db, "user-1", "earn", 50, "bonus", idempotency_key="welcome-bonus")
                for _ in range(4)
            ),
        )

        assert len({tx.id for tx in results}) == 1
        async with factory() as db:
            assert await get_balance(db, "user-1") == 50
            count = await db.execute(
                select(func.count()).select_from(CoinTransaction).where(CoinTransaction.user_id == "user-1")
            )
            assert count.scalar_one() == 1


class TestPointsRace:
    """Test that racing awards all land on the total."""

    async def test_concurrent_awards_sum(self, shared_session_factory):
        factory = shared_session_factory
        awards = [100, 250, 75, 300, 25]

        await _race(factory, *(lambda db, p=p: award_points(db, "user-1", p, "quiz") for p in awards))

        async with factory() as db:
            total = await db.execute(
                select(LeaderboardEntry.total_points).where(LeaderboardEntry.user_id == "user-1")
            )
            assert total.scalar_one() == sum(awards)
            rows = await db.execute(
                select(func.count()).select_from(LeaderboardEntry).where(LeaderboardEntry.user_id == "user-1")
            )
            assert rows.scalar_one() == 1
            award_rows = await db.execute(
                select(func.count()).select_from(PointAward).where(PointAward.user_id == "user-1")
            )
            assert award_rows.scalar_one() == len(awards)


class TestStreakRace:
    """Test that racing activity on one day counts once."""

    async def test_first_activity_creates_one_streak(self, shared_session_factory):
        factory = shared_session_factory
        now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

        await _race(
            factory,
            *(lambda db: record_activity(db, "user-1", "daily_login", now=now, evaluate_badges=False) for _ in range(3)),
        )

        async with factory() as db:
            streaks = await db.execute(
                select(Streak).where(Streak.user_id == "user-1", Streak.streak_type == "daily_login")
            )
            (streak,) = streaks.scalars().all()
            assert streak.current_streak == 1

    async def test_next_day_advances_once(self, shared_session_factory):
        factory = shared_session_factory
        day_one = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        day_two = day_one + timedelta(days=1)
        await _in_own_session(
            factory, lambda db: record_activity(db, "user-1", "daily_login", now=day_one, evaluate_badges=False)
        )

        await _race(
            factory,
            *(lambda db: record_activity(db, "user-1", "daily_login", now=day_two, evaluate_badges=False) for _ in range(3)),
        )

        async with factory() as db:
            current = await db.execute(
                select(Streak.current_streak).where(Streak.user_id == "user-1", Streak.streak_type == "daily_login")
            )
            assert current.scalar_one() == 2
