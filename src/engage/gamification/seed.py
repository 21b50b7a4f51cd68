"""Badge seed data — the default streaming-platform badge set."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from engage.db.models import Badge

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    # Watching
    {
        "slug": "first_watch",
        "name": "Opening Credits",
        "description": "Watch your first movie",
        "icon": "film",
        "category": "watching",
        "rarity": "common",
        "criteria_kind": "count",
        "criteria_target": 1,
        "criteria_metric": "movies_watched",
        "points": 10,
    },
    {
        "slug": "binge_watcher",
        "name": "Binge Watcher",
        "description": "Watch 10 movies",
        "icon": "popcorn",
        "category": "watching",
        "rarity": "rare",
        "criteria_kind": "count",
        "criteria_target": 10,
        "criteria_metric": "movies_watched",
        "points": 100,
        "unlock_message": "Ten down. The couch is yours now.",
    },
    {
        "slug": "cinephile",
        "name": "Cinephile",
        "description": "Watch 100 movies",
        "icon": "projector",
        "category": "watching",
        "rarity": "epic",
        "criteria_kind": "count",
        "criteria_target": 100,
        "criteria_metric": "movies_watched",
        "points": 500,
    },
    {
        "slug": "series_finisher",
        "name": "Season Finale",
        "description": "Watch 50 episodes",
        "icon": "tv",
        "category": "watching",
        "rarity": "rare",
        "criteria_kind": "count",
        "criteria_target": 50,
        "criteria_metric": "episodes_watched",
        "points": 150,
    },
    # Rating
    {
        "slug": "first_review",
        "name": "Critic in Training",
        "description": "Write your first review",
        "icon": "pen",
        "category": "rating",
        "rarity": "common",
        "criteria_kind": "count",
        "criteria_target": 1,
        "criteria_metric": "reviews_written",
        "points": 10,
    },
    {
        "slug": "top_critic",
        "name": "Top Critic",
        "description": "Write 100 reviews",
        "icon": "star",
        "category": "rating",
        "rarity": "epic",
        "criteria_kind": "count",
        "criteria_target": 100,
        "criteria_metric": "reviews_written",
        "points": 500,
    },
    # Social
    {
        "slug": "crowd_favorite",
        "name": "Crowd Favorite",
        "description": "Reach 1,000 followers",
        "icon": "users",
        "category": "social",
        "rarity": "legendary",
        "criteria_kind": "count",
        "criteria_target": 1000,
        "criteria_metric": "followers_count",
        "points": 1000,
    },
    {
        "slug": "quiz_master",
        "name": "Quiz Master",
        "description": "Complete 25 quizzes",
        "icon": "brain",
        "category": "social",
        "rarity": "rare",
        "criteria_kind": "count",
        "criteria_target": 25,
        "criteria_metric": "quizzes_completed",
        "points": 150,
    },
    # Streaks
    {
        "slug": "week_streak",
        "name": "Week Warrior",
        "description": "Log in 7 days in a row",
        "icon": "flame",
        "category": "achievement",
        "rarity": "common",
        "criteria_kind": "streak",
        "criteria_target": 7,
        "criteria_metric": "streak:daily_login",
        "points": 50,
    },
    {
        "slug": "month_of_movies",
        "name": "Month of Movies",
        "description": "Watch something 30 days in a row",
        "icon": "calendar",
        "category": "achievement",
        "rarity": "epic",
        "criteria_kind": "streak",
        "criteria_target": 30,
        "criteria_metric": "streak:daily_watch",
        "points": 300,
    },
    # Levels
    {
        "slug": "level_5",
        "name": "Regular",
        "description": "Reach level 5",
        "icon": "badge",
        "category": "achievement",
        "rarity": "rare",
        "criteria_kind": "level",
        "criteria_target": 5,
        "criteria_metric": "level",
        "points": 100,
    },
    # Special
    {
        "slug": "watch_party_host",
        "name": "Party Host",
        "description": "Host a watch party",
        "icon": "party",
        "category": "special",
        "rarity": "rare",
        "criteria_kind": "special",
        "criteria_target": 1,
        "criteria_metric": "watch_party_hosted",
        "points": 75,
        "is_secret": True,
    },
    {
        "slug": "premiere_night",
        "name": "Premiere Night",
        "description": "Attend a live premiere event",
        "icon": "ticket",
        "category": "seasonal",
        "rarity": "legendary",
        "criteria_kind": "special",
        "criteria_target": 1,
        "criteria_metric": "premiere_attended",
        "points": 250,
    },
]


async def seed_badges(db: AsyncSession) -> int:
    """Insert or refresh the default badge definitions. Returns number seeded.

    Existing achievements keep the target they copied at creation.
    """
    existing = {b.slug: b for b in (await db.execute(select(Badge))).scalars()}
    seeded = 0
    for badge_data in BADGE_SEED_DATA:
        badge = existing.get(badge_data["slug"])
        if badge is None:
            db.add(Badge(**badge_data))
        else:
            for field, value in badge_data.items():
                setattr(badge, field, value)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d badge definitions", seeded)
    return seeded
