"""Activity arq worker — consumes platform activity from a Redis Stream.

Each stream entry carries `user_id`, `kind` and optionally `counters`
(JSON object of absolute stat values) and `occurred_at` (ISO timestamp).
Entries are acknowledged once their transaction commits; entries that
fail unexpectedly stay pending in the consumer group for a later retry.

Run with: arq engage.gamification.worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import get_settings
from engage.database import close_db, get_session_factory, init_db
from engage.errors import GamificationError, ValidationError
from engage.gamification.achievement_service import redeliver_unlocks
from engage.gamification.activity import ActivityDispatcher, ActivityResult
from engage.gamification.events import commit_and_broadcast
from engage.middleware.logging import setup_logging

logger = logging.getLogger(__name__)


def parse_activity(raw: dict[str, Any]) -> tuple[str, str, dict[str, int] | None, datetime | None]:
    """Decode one stream entry into (user_id, kind, counters, occurred_at)."""
    user_id = raw.get("user_id")
    kind = raw.get("kind")
    if not user_id or not kind:
        raise ValidationError("Activity entry needs user_id and kind")

    counters = None
    if raw.get("counters"):
        try:
            counters = json.loads(raw["counters"])
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed counters: {e}") from e
        if not isinstance(counters, dict):
            raise ValidationError("counters must be a JSON object")

    occurred_at = None
    if raw.get("occurred_at"):
        try:
            occurred_at = datetime.fromisoformat(raw["occurred_at"])
        except ValueError as e:
            raise ValidationError(f"Malformed occurred_at: {e}") from e

    return user_id, kind, counters, occurred_at


async def process_activity(db: AsyncSession, redis: object, raw: dict[str, Any]) -> ActivityResult:
    """Dispatch one stream entry, commit its effects, then announce them."""
    user_id, kind, counters, occurred_at = parse_activity(raw)
    result = await ActivityDispatcher(db).dispatch(user_id, kind, counters, now=occurred_at)
    await commit_and_broadcast(db, redis)
    if result.unlocked:
        logger.info("Activity %s for %s unlocked %s", kind, user_id, result.unlocked)
    return result


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Open DB and Redis connections, create the consumer group, start consuming."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    try:
        await redis_client.xgroup_create(
            settings.activity_stream, settings.activity_consumer_group, id="0", mkstream=True
        )
    except aioredis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise

    ctx["engage_redis"] = redis_client
    await ctx["redis"].enqueue_job("consume_activity", _job_id="engage:consume_activity")
    logger.info("Activity worker started on %s", settings.activity_stream)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    redis_client: aioredis.Redis | None = ctx.get("engage_redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Activity worker shut down")


async def consume_activity(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop."""
    settings = get_settings()
    redis_client: aioredis.Redis = ctx["engage_redis"]
    stream = settings.activity_stream
    group = settings.activity_consumer_group
    session_factory = get_session_factory()

    while True:
        try:
            events = await redis_client.xreadgroup(
                groupname=group,
                consumername=settings.activity_consumer_name,
                streams={stream: ">"},
                count=100,
                block=5000,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        for _stream_name, messages in events or []:
            for msg_id, raw in messages:
                try:
                    async with session_factory() as db:
                        await process_activity(db, redis_client, raw)
                except GamificationError as e:
                    # Rejected entries will never succeed; drop them
                    logger.warning("Dropping activity %s: %s", msg_id, e.message)
                except Exception:
                    logger.exception("Failed to process activity %s", msg_id)
                    continue
                await redis_client.xack(stream, group, msg_id)


async def redeliver_unlock_events(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled repair: finish unlock fan-outs that never completed, one batch per run."""
    async with get_session_factory()() as db:
        replayed = await redeliver_unlocks(db)
        await commit_and_broadcast(db, ctx.get("engage_redis"))
    return replayed


def _redelivery_minutes() -> set[int]:
    step = max(1, min(get_settings().unlock_redelivery_minutes, 60))
    return set(range(0, 60, step))


class WorkerSettings:
    """arq worker settings for the activity consumer."""

    functions = [consume_activity, redeliver_unlock_events]
    cron_jobs = [cron(redeliver_unlock_events, minute=_redelivery_minutes(), run_at_startup=False)]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    job_timeout = timedelta(days=365)  # consume_activity runs until shutdown
    allow_abort_jobs = True
