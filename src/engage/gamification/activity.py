"""Activity dispatcher — routes platform activity signals into the engine.

One activity may touch a streak, mirrored leaderboard counters, count
badges, special badges and finally level badges. Level badges run last
and repeat until no further unlock happens, because an unlock's points
can raise the level again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from engage.db.models import Streak
from engage.errors import ValidationError
from engage.gamification import leaderboard_service, streak_service
from engage.gamification.events import EventBus
from engage.gamification.trigger_engine import TriggerEngine

logger = logging.getLogger(__name__)

# Activity kind -> streak type it counts toward (None: no streak)
ACTIVITY_STREAKS: dict[str, str | None] = {
    "login": "daily_login",
    "content_watched": "daily_watch",
    "review_written": "daily_review",
    "quiz_completed": None,
    "comment_posted": None,
    "poll_participated": None,
    "event_attended": None,
    "watch_party_hosted": None,
    "premiere_attended": None,
}

LEVEL_METRIC = "level"


@dataclass
class ActivityResult:
    kind: str
    streak: Streak | None = None
    unlocked: list[str] = field(default_factory=list)
    level: int = 1


class ActivityDispatcher:
    """Applies one activity signal for a user within the caller's transaction."""

    def __init__(self, db: AsyncSession, bus: EventBus | None = None) -> None:
        self.db = db
        self.bus = bus
        self.engine = TriggerEngine(db, bus)

    async def dispatch(
        self,
        user_id: str,
        kind: str,
        counters: dict[str, int] | None = None,
        now: datetime | None = None,
    ) -> ActivityResult:
        """Apply an activity. `counters` are absolute values owned by other services."""
        if kind not in ACTIVITY_STREAKS:
            raise ValidationError(f"Unknown activity kind: {kind}")

        result = ActivityResult(kind=kind)
        streak_type = ACTIVITY_STREAKS[kind]
        if streak_type is not None:
            result.streak = await streak_service.record_activity(
                self.db,
                user_id,
                streak_type,
                activity=kind,
                now=now,
                bus=self.bus,
                evaluate_badges=False,
            )
            result.unlocked += await self.engine.evaluate_metric(
                user_id, f"streak:{streak_type}", result.streak.current_streak
            )

        if counters:
            await leaderboard_service.mirror_stats(self.db, user_id, counters)
            result.unlocked += await self.engine.evaluate_metrics(user_id, counters)

        result.unlocked += await self.engine.check_special(user_id, kind)
        result.level = await self.evaluate_level(user_id, result.unlocked)

        logger.debug("Dispatched %s for %s: unlocked=%s", kind, user_id, result.unlocked)
        return result

    async def evaluate_level(self, user_id: str, unlocked: list[str]) -> int:
        """Evaluate level badges until the level settles. Returns the final level."""
        while True:
            entry = await leaderboard_service.get_or_create_entry(self.db, user_id)
            awarded = await self.engine.evaluate_metric(user_id, LEVEL_METRIC, entry.level)
            if not awarded:
                return entry.level
            unlocked += awarded
