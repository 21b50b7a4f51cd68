"""Pydantic request/response models for gamification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import AliasChoices, BaseModel, Field

T = TypeVar("T")


# --- Envelope ---


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str | None = None


class PagedEnvelope(BaseModel, Generic[T]):
    success: bool = True
    data: T
    total: int
    page: int
    limit: int
    total_pages: int


def total_pages(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0


# --- Badge ---


class BadgeResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    slug: str
    name: str
    description: str
    icon: str
    category: str
    rarity: str
    criteria_kind: str
    criteria_target: int
    criteria_metric: str | None = None
    points: int
    color: str | None = None
    unlock_message: str | None = None
    is_active: bool
    is_secret: bool
    holder_count: int = 0


class BadgeHolderResponse(BaseModel):
    model_config = {"from_attributes": True}

    user_id: str
    unlocked_at: datetime


class BadgeDetailResponse(BadgeResponse):
    recent_holders: list[BadgeHolderResponse] = []


# --- Achievements ---


class AchievementResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    user_id: str
    badge: BadgeResponse
    progress_current: int
    progress_target: int
    is_unlocked: bool
    unlocked_at: datetime | None = None
    display_on_profile: bool = True


class AchievementStats(BaseModel):
    total: int
    unlocked: int
    in_progress: int


class UserAchievementsResponse(BaseModel):
    achievements: list[AchievementResponse]
    stats: AchievementStats


class ProgressRequest(BaseModel):
    badge_id: int
    progress: int


class ProgressResponse(BaseModel):
    achievement: AchievementResponse
    unlocked_now: bool


# --- Streaks ---


class StreakHistoryResponse(BaseModel):
    model_config = {"from_attributes": True}

    activity_date: datetime
    count: int
    activities: list[str] = []


class StreakMilestoneResponse(BaseModel):
    model_config = {"from_attributes": True}

    days: int
    achieved_at: datetime
    reward_points: int


class StreakResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    user_id: str
    streak_type: str
    current_streak: int
    longest_streak: int
    last_activity_date: datetime
    freezes_available: int
    freezes_used: int
    is_active: bool
    recent_history: list[StreakHistoryResponse] = []
    milestones: list[StreakMilestoneResponse] = []


class StreakActivityRequest(BaseModel):
    streak_type: str = "daily_login"
    activity: str | None = Field(default=None, max_length=64)


class FreezeRequest(BaseModel):
    streak_type: str = "daily_login"


# --- Coins ---


class CoinTransactionResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    type: str
    amount: int
    balance_after: int
    reason: str
    description: str | None = None
    related_item_type: str | None = None
    related_item_id: str | None = None
    tx_metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("tx_metadata", "metadata"),
        serialization_alias="metadata",
    )
    created_at: datetime


class CoinHistoryResponse(BaseModel):
    balance: int
    transactions: list[CoinTransactionResponse]


class BalanceResponse(BaseModel):
    balance: int


class AwardCoinsRequest(BaseModel):
    amount: int
    reason: str = "other"
    description: str | None = Field(default=None, max_length=256)


# --- Leaderboard ---


class LevelInfo(BaseModel):
    level: int
    points_into_level: int
    points_for_level: int
    next_level: int
    next_level_at: int


class LeaderboardRow(BaseModel):
    rank: int
    user_id: str
    points: int
    total_points: int
    level: int


class LeaderboardUserResponse(BaseModel):
    rank: int
    user_id: str
    total_points: int
    level: LevelInfo
    stats: dict[str, int]
