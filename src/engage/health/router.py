"""Liveness, readiness and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import get_settings
from engage.db.models import Badge
from engage.dependencies import get_db
from engage.redis_client import get_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(db: AsyncSession = Depends(get_db)) -> dict[str, object]:  # noqa: B008
    """Ready once the database answers, the badge catalog is seeded and Redis responds.

    A missing Redis only degrades readiness: pub/sub broadcasting is best effort.
    """
    checks: dict[str, object] = {}

    try:
        badge_count = (await db.execute(select(func.count()).select_from(Badge))).scalar_one()
        checks["database"] = "ok"
        checks["badges"] = "ok" if badge_count else "empty"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    try:
        await get_redis().ping()
        checks["redis"] = "ok"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    status = "ready" if all(v == "ok" for v in checks.values()) else "degraded"
    return {"status": status, "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {"version": settings.app_version, "environment": settings.environment}
