"""Level computation from leaderboard points.

Levels are flat tiers: one level per POINTS_PER_LEVEL points, starting at 1.
The same rule is applied in SQL by the leaderboard increment.
"""

from __future__ import annotations

POINTS_PER_LEVEL = 1000


def level_for_points(total_points: int) -> int:
    """Return floor(total_points / POINTS_PER_LEVEL) + 1."""
    return max(total_points, 0) // POINTS_PER_LEVEL + 1


def compute_level(total_points: int) -> dict:
    """Compute level info from total points."""
    level = level_for_points(total_points)
    floor_points = (level - 1) * POINTS_PER_LEVEL
    return {
        "level": level,
        "points_into_level": max(total_points, 0) - floor_points,
        "points_for_level": POINTS_PER_LEVEL,
        "next_level": level + 1,
        "next_level_at": level * POINTS_PER_LEVEL,
    }
