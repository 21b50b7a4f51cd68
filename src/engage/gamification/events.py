"""Internal gamification events and the in-process bus that fans them out.

Handlers run inline, inside the publisher's database transaction, so an
unlock and its side effects commit or roll back together. Every handler
must be idempotent: `redeliver_unlocks()` replays events on purpose.

Events meant for activity feeds and overlays are queued on the session
and broadcast on Redis pub/sub (best effort) only once the transaction
has committed; see `commit_and_broadcast`.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementUnlocked:
    user_id: str
    achievement_id: int
    badge_id: int
    badge_slug: str
    badge_name: str
    rarity: str
    points: int
    unlocked_at: datetime

    channel = "pubsub:badge_unlocked"

    @property
    def idempotency_key(self) -> str:
        return f"achievement:{self.badge_id}:{self.user_id}"


@dataclass(frozen=True)
class StreakMilestoneReached:
    user_id: str
    streak_id: int
    streak_type: str
    days: int
    reward_points: int
    achieved_at: datetime

    channel = "pubsub:streak_milestone"

    @property
    def idempotency_key(self) -> str:
        return f"streak:{self.streak_id}:{self.days}"


@dataclass(frozen=True)
class LevelUp:
    user_id: str
    old_level: int
    new_level: int
    total_points: int

    channel = "pubsub:level_up"


Handler = Callable[[AsyncSession, Any], Awaitable[None]]


class EventBus:
    """Ordered, synchronous fan-out of events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: type) -> list[Handler]:
        return list(self._handlers.get(event_type, ()))

    async def publish(self, db: AsyncSession, event: object, announce: bool = True) -> None:
        """Run all handlers for the event, then queue it for broadcast after commit."""
        for handler in self.handlers_for(type(event)):
            await handler(db, event)
        if announce:
            queue_broadcast(db, event)


PENDING_BROADCASTS = "engage_pending_broadcasts"


def queue_broadcast(db: AsyncSession, event: object) -> None:
    db.info.setdefault(PENDING_BROADCASTS, []).append(event)


def pending_broadcasts(db: AsyncSession) -> list[object]:
    return list(db.info.get(PENDING_BROADCASTS, ()))


def discard_broadcasts(db: AsyncSession) -> None:
    db.info.pop(PENDING_BROADCASTS, None)


@sa_event.listens_for(Session, "after_soft_rollback")
def _discard_on_rollback(session: Session, previous_transaction) -> None:
    # Savepoint rollbacks (retried inserts) keep the queue
    if previous_transaction.parent is None:
        session.info.pop(PENDING_BROADCASTS, None)


async def commit_and_broadcast(db: AsyncSession, redis: object) -> None:
    """Commit, then publish every event queued during the transaction.

    A failed commit drops the queue, so nothing is announced for work
    that never persisted.
    """
    try:
        await db.commit()
    except Exception:
        discard_broadcasts(db)
        raise
    events = db.info.pop(PENDING_BROADCASTS, [])
    for event in events:
        await broadcast(redis, event)


async def broadcast(redis: object, event: object) -> None:
    """Publish the event on its Redis channel. Failures are logged, never raised."""
    if redis is None:
        return
    payload = {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in asdict(event).items()}
    try:
        await redis.publish(event.channel, json.dumps(payload))  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to publish %s", type(event).__name__, exc_info=True)


_default_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Return the process-wide bus with the default handlers wired in."""
    global _default_bus  # noqa: PLW0603
    if _default_bus is None:
        from engage.gamification.handlers import register_default_handlers

        bus = EventBus()
        register_default_handlers(bus)
        _default_bus = bus
    return _default_bus
