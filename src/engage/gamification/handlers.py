"""Default subscribers for gamification events.

Each handler is keyed so a replayed event is a no-op:
holders by UNIQUE(badge_id, user_id), coins and points by idempotency key.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from engage.gamification import badge_catalog, leaderboard_service, ledger_service
from engage.gamification.events import AchievementUnlocked, EventBus, StreakMilestoneReached

logger = logging.getLogger(__name__)


async def add_badge_holder(db: AsyncSession, event: AchievementUnlocked) -> None:
    added = await badge_catalog.add_holder(db, event.badge_id, event.user_id, event.unlocked_at)
    if added:
        await leaderboard_service.increment_stat(db, event.user_id, "badges_earned")


async def credit_unlock_coins(db: AsyncSession, event: AchievementUnlocked) -> None:
    if event.points <= 0:
        return
    await ledger_service.record_transaction(
        db,
        event.user_id,
        "earn",
        event.points,
        "achievement",
        description=f'Unlocked badge: "{event.badge_name}"',
        related_item={"item_type": "badge", "item_id": str(event.badge_id)},
        idempotency_key=event.idempotency_key,
    )


async def award_unlock_points(db: AsyncSession, event: AchievementUnlocked) -> None:
    await leaderboard_service.award_points(
        db,
        event.user_id,
        event.points,
        source="achievement",
        source_id=event.badge_slug,
        idempotency_key=event.idempotency_key,
    )


async def credit_milestone_coins(db: AsyncSession, event: StreakMilestoneReached) -> None:
    if event.reward_points <= 0:
        return
    await ledger_service.record_transaction(
        db,
        event.user_id,
        "bonus",
        event.reward_points,
        "bonus",
        description=f"{event.days}-day {event.streak_type} streak",
        related_item={"item_type": "streak", "item_id": str(event.streak_id)},
        idempotency_key=event.idempotency_key,
    )
    logger.info("Streak milestone %d reached by %s", event.days, event.user_id)


def register_default_handlers(bus: EventBus) -> None:
    bus.subscribe(AchievementUnlocked, add_badge_holder)
    bus.subscribe(AchievementUnlocked, credit_unlock_coins)
    bus.subscribe(AchievementUnlocked, award_unlock_points)
    bus.subscribe(StreakMilestoneReached, credit_milestone_coins)
