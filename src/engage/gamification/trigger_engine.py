"""Badge trigger engine — turns metric observations into achievement progress.

A badge's criteria name a metric (e.g. "movies_watched", "streak:daily_watch",
"level") and a target. Observed metric values are written as absolute
progress on every active badge bound to the metric; `special` badges are
completed outright when the named platform event occurs.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from engage.gamification.achievement_service import record_progress
from engage.gamification.badge_catalog import list_badges_for_metric
from engage.gamification.events import EventBus

logger = logging.getLogger(__name__)

PROGRESS_KINDS = ("count", "streak", "level", "time_based")


class TriggerEngine:
    """Evaluates badge criteria for metric updates and platform events."""

    def __init__(self, db: AsyncSession, bus: EventBus | None = None) -> None:
        self.db = db
        self.bus = bus

    async def evaluate_metric(self, user_id: str, metric: str, value: int) -> list[str]:
        """Record progress on every badge bound to metric. Returns slugs unlocked now."""
        awarded: list[str] = []
        for badge in await list_badges_for_metric(self.db, metric, PROGRESS_KINDS):
            _, unlocked = await record_progress(self.db, user_id, badge.id, max(int(value), 0), bus=self.bus)
            if unlocked:
                awarded.append(badge.slug)
        if awarded:
            logger.info("Metric %s=%s unlocked %s for %s", metric, value, awarded, user_id)
        return awarded

    async def evaluate_metrics(self, user_id: str, metrics: dict[str, int]) -> list[str]:
        awarded: list[str] = []
        for metric, value in metrics.items():
            awarded += await self.evaluate_metric(user_id, metric, value)
        return awarded

    async def check_special(self, user_id: str, event: str) -> list[str]:
        """Complete `special` badges triggered by a named platform event."""
        awarded: list[str] = []
        for badge in await list_badges_for_metric(self.db, event, ("special",)):
            _, unlocked = await record_progress(self.db, user_id, badge.id, badge.criteria_target, bus=self.bus)
            if unlocked:
                awarded.append(badge.slug)
        return awarded
