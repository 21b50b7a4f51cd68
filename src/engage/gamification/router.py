"""Gamification API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import get_settings
from engage.database import get_session
from engage.db.models import Streak
from engage.dependencies import get_current_user_id, get_redis_dep
from engage.gamification import (
    achievement_service,
    badge_catalog,
    leaderboard_service,
    ledger_service,
    streak_service,
)
from engage.gamification.activity import ActivityDispatcher
from engage.gamification.events import commit_and_broadcast
from engage.gamification.levels import compute_level
from engage.gamification.schemas import (
    AchievementResponse,
    AwardCoinsRequest,
    BadgeDetailResponse,
    BadgeHolderResponse,
    BadgeResponse,
    BalanceResponse,
    CoinHistoryResponse,
    CoinTransactionResponse,
    Envelope,
    FreezeRequest,
    LeaderboardRow,
    LeaderboardUserResponse,
    LevelInfo,
    PagedEnvelope,
    ProgressRequest,
    ProgressResponse,
    StreakActivityRequest,
    StreakHistoryResponse,
    StreakResponse,
    UserAchievementsResponse,
    total_pages,
)

router = APIRouter(prefix="/api/v1/gamification", tags=["Gamification"])


def _clamp_limit(limit: int | None, default: int, maximum: int) -> int:
    return min(limit or default, maximum)


async def _streak_response(db: AsyncSession, streak: Streak) -> StreakResponse:
    response = StreakResponse.model_validate(streak)
    response.recent_history = [
        StreakHistoryResponse.model_validate(h) for h in await streak_service.get_recent_history(db, streak.id)
    ]
    return response


# ── Badges (public) ──


@router.get("/badges", response_model=Envelope[list[BadgeResponse]])
async def list_badges(
    category: str | None = Query(None),
    rarity: str | None = Query(None),
    db: AsyncSession = Depends(get_session),
):
    """Active badges, common first, highest points first within a rarity."""
    badges = await badge_catalog.list_badges(db, category=category, rarity=rarity)
    return Envelope(data=[BadgeResponse.model_validate(b) for b in badges])


@router.get("/badges/{badge_id}", response_model=Envelope[BadgeDetailResponse])
async def get_badge(badge_id: int, db: AsyncSession = Depends(get_session)):
    """Badge detail with its most recent holders."""
    badge = await badge_catalog.get_badge(db, badge_id)
    holders = await badge_catalog.list_holders(db, badge.id)
    detail = BadgeDetailResponse.model_validate(badge)
    detail.recent_holders = [BadgeHolderResponse.model_validate(h) for h in holders]
    return Envelope(data=detail)


# ── Leaderboard (public) ──


@router.get("/leaderboard", response_model=PagedEnvelope[list[LeaderboardRow]])
async def get_leaderboard(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    timeframe: str = Query("all"),
    min_level: int | None = Query(None, ge=1),
    db: AsyncSession = Depends(get_session),
):
    """Ranked leaderboard page. Ranks are global positions, not page positions."""
    settings = get_settings()
    limit = _clamp_limit(limit, settings.leaderboard_default_limit, settings.leaderboard_max_limit)
    rows, total = await leaderboard_service.get_ranked_page(
        db, page=page, limit=limit, timeframe=timeframe, min_level=min_level
    )
    return PagedEnvelope(
        data=[
            LeaderboardRow(
                rank=row["rank"],
                user_id=row["entry"].user_id,
                points=row["points"],
                total_points=row["entry"].total_points,
                level=row["entry"].level,
            )
            for row in rows
        ],
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages(total, limit),
    )


@router.get("/leaderboard/{user_id}", response_model=Envelope[LeaderboardUserResponse])
async def get_leaderboard_user(user_id: str, db: AsyncSession = Depends(get_session)):
    """A user's entry with all-time rank, level progress and mirrored stats."""
    entry, rank = await leaderboard_service.get_user_entry(db, user_id)
    await db.commit()
    return Envelope(
        data=LeaderboardUserResponse(
            rank=rank,
            user_id=entry.user_id,
            total_points=entry.total_points,
            level=LevelInfo(**compute_level(entry.total_points)),
            stats={field: getattr(entry, field) for field in leaderboard_service.STAT_FIELDS},
        )
    )


# ── Achievements ──


@router.get("/achievements/{user_id}", response_model=Envelope[UserAchievementsResponse])
async def get_user_achievements(user_id: str, db: AsyncSession = Depends(get_session)):
    result = await achievement_service.get_user_achievements(db, user_id)
    return Envelope(
        data=UserAchievementsResponse(
            achievements=[AchievementResponse.model_validate(a) for a in result["achievements"]],
            stats=result["stats"],
        )
    )


@router.post("/achievements/progress", response_model=Envelope[ProgressResponse])
async def record_progress(
    body: ProgressRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Set absolute progress for the acting user on one badge."""
    achievement, unlocked_now = await achievement_service.record_progress(db, user_id, body.badge_id, body.progress)
    if unlocked_now:
        await ActivityDispatcher(db).evaluate_level(user_id, [])
    await commit_and_broadcast(db, redis)
    message = None
    if unlocked_now:
        message = achievement.badge.unlock_message or f"Unlocked {achievement.badge.name}"
    return Envelope(
        data=ProgressResponse(
            achievement=AchievementResponse.model_validate(achievement),
            unlocked_now=unlocked_now,
        ),
        message=message,
    )


# ── Streaks ──


@router.post("/streaks", response_model=Envelope[StreakResponse])
async def record_streak_activity(
    body: StreakActivityRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Register today's activity on one of the acting user's streaks."""
    streak = await streak_service.record_activity(db, user_id, body.streak_type, activity=body.activity)
    await ActivityDispatcher(db).evaluate_level(user_id, [])
    await commit_and_broadcast(db, redis)
    return Envelope(data=await _streak_response(db, streak))


@router.post("/streaks/freeze", response_model=Envelope[StreakResponse])
async def use_streak_freeze(
    body: FreezeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """Spend one freeze to cover a missed day."""
    streak = await streak_service.use_freeze(db, user_id, body.streak_type)
    await db.commit()
    return Envelope(data=await _streak_response(db, streak), message="Streak freeze applied")


@router.get("/streaks/{user_id}", response_model=Envelope[list[StreakResponse]])
async def get_user_streaks(user_id: str, db: AsyncSession = Depends(get_session)):
    streaks = await streak_service.get_user_streaks(db, user_id)
    return Envelope(data=[await _streak_response(db, s) for s in streaks])


# ── Coins (self) ──


@router.get("/coins", response_model=PagedEnvelope[CoinHistoryResponse])
async def get_coin_history(
    type: str | None = Query(None),  # noqa: A002
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """The acting user's balance and transactions, newest first."""
    settings = get_settings()
    limit = _clamp_limit(limit, settings.coins_default_limit, settings.leaderboard_max_limit)
    transactions, total = await ledger_service.list_transactions(
        db, user_id, tx_type=type, page=page, limit=limit
    )
    balance = await ledger_service.get_balance(db, user_id)
    return PagedEnvelope(
        data=CoinHistoryResponse(
            balance=balance,
            transactions=[CoinTransactionResponse.model_validate(t) for t in transactions],
        ),
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages(total, limit),
    )


@router.get("/coins/balance", response_model=Envelope[BalanceResponse])
async def get_coin_balance(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    return Envelope(data=BalanceResponse(balance=await ledger_service.get_balance(db, user_id)))


@router.post("/coins/award", response_model=Envelope[CoinTransactionResponse])
async def award_coins(
    body: AwardCoinsRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """Credit coins to the acting user."""
    tx = await ledger_service.award_coins(db, user_id, body.amount, body.reason, description=body.description)
    await db.commit()
    return Envelope(
        data=CoinTransactionResponse.model_validate(tx),
        message=f"Awarded {body.amount} coins",
    )
