"""Badge catalog: read-mostly badge definitions and holder bookkeeping."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engage.db.models import Badge, BadgeHolder
from engage.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CATEGORIES = ("watching", "rating", "social", "achievement", "special", "seasonal")
RARITIES = ("common", "rare", "epic", "legendary")
CRITERIA_KINDS = ("count", "streak", "special", "time_based", "level")

_RARITY_ORDER = case(
    {rarity: tier for tier, rarity in enumerate(RARITIES)},
    value=Badge.rarity,
    else_=len(RARITIES),
)


async def list_badges(
    db: AsyncSession,
    category: str | None = None,
    rarity: str | None = None,
    is_active: bool | None = True,
) -> list[Badge]:
    """List badges, rarest last, highest points first within a rarity.

    `is_active=None` returns active and inactive badges alike.
    """
    if category is not None and category not in CATEGORIES:
        raise ValidationError(f"Unknown badge category: {category}")
    if rarity is not None and rarity not in RARITIES:
        raise ValidationError(f"Unknown badge rarity: {rarity}")

    query = select(Badge)
    if is_active is not None:
        query = query.where(Badge.is_active.is_(is_active))
    if category is not None:
        query = query.where(Badge.category == category)
    if rarity is not None:
        query = query.where(Badge.rarity == rarity)

    result = await db.execute(query.order_by(_RARITY_ORDER, Badge.points.desc(), Badge.id))
    return list(result.scalars().all())


async def get_badge(db: AsyncSession, badge_id: int) -> Badge:
    """Fetch a badge by id or raise NotFoundError."""
    badge = await db.get(Badge, badge_id)
    if badge is None:
        raise NotFoundError("Badge not found")
    return badge


async def get_badge_by_slug(db: AsyncSession, slug: str) -> Badge | None:
    """Fetch a badge definition by slug."""
    result = await db.execute(select(Badge).where(Badge.slug == slug))
    return result.scalar_one_or_none()


async def list_badges_for_metric(db: AsyncSession, metric: str, kinds: tuple[str, ...]) -> list[Badge]:
    """Active badges of the given criteria kinds bound to a metric."""
    result = await db.execute(
        select(Badge)
        .where(
            Badge.is_active.is_(True),
            Badge.criteria_metric == metric,
            Badge.criteria_kind.in_(kinds),
        )
        .order_by(Badge.criteria_target, Badge.id)
    )
    return list(result.scalars().all())


async def add_holder(db: AsyncSession, badge_id: int, user_id: str, unlocked_at: datetime) -> bool:
    """Record user as a holder of the badge. Returns False if already recorded.

    The count is bumped with an atomic SQL increment and only when the
    holder row is new, so holder_count always equals the number of holders.
    """
    try:
        async with db.begin_nested():
            db.add(BadgeHolder(badge_id=badge_id, user_id=user_id, unlocked_at=unlocked_at))
    except IntegrityError:
        return False

    await db.execute(
        update(Badge)
        .where(Badge.id == badge_id)
        .values(holder_count=Badge.holder_count + 1)
        .execution_options(synchronize_session=False)
    )
    logger.info("User %s now holds badge %d", user_id, badge_id)
    return True


async def list_holders(db: AsyncSession, badge_id: int, limit: int = 10) -> list[BadgeHolder]:
    """Most recent holders of a badge."""
    result = await db.execute(
        select(BadgeHolder)
        .where(BadgeHolder.badge_id == badge_id)
        .order_by(BadgeHolder.unlocked_at.desc(), BadgeHolder.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
