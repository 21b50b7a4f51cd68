"""Coin ledger: append-only transactions with a running balance.

balance_after of the newest row is the user's balance. Each row also
carries a per-user sequence number; UNIQUE(user_id, seq) turns the
"read latest, append next" step into a compare-and-set, so two writers
that read the same predecessor cannot both commit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engage.config import get_settings
from engage.db.models import CoinTransaction
from engage.errors import ConflictError, ValidationError
from engage.gamification.lanes import acquire_lane

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = frozenset({"earn", "spend", "gift", "purchase", "refund", "bonus", "penalty"})

TRANSACTION_REASONS = frozenset({
    "daily_login",
    "watch_content",
    "write_review",
    "complete_quiz",
    "achievement",
    "gift_sent",
    "gift_received",
    "subscription_purchase",
    "item_purchase",
    "refund",
    "bonus",
    "admin_adjustment",
    "other",
})


async def get_latest_transaction(db: AsyncSession, user_id: str) -> CoinTransaction | None:
    """Fetch the user's most recent transaction."""
    result = await db.execute(
        select(CoinTransaction)
        .where(CoinTransaction.user_id == user_id)
        .order_by(CoinTransaction.seq.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_transaction_by_key(db: AsyncSession, idempotency_key: str) -> CoinTransaction | None:
    result = await db.execute(
        select(CoinTransaction).where(CoinTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def get_balance(db: AsyncSession, user_id: str) -> int:
    """Return balance_after of the newest transaction, or 0."""
    latest = await get_latest_transaction(db, user_id)
    return latest.balance_after if latest else 0


async def record_transaction(
    db: AsyncSession,
    user_id: str,
    tx_type: str,
    amount: int,
    reason: str,
    description: str | None = None,
    related_item: dict[str, str] | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> CoinTransaction:
    """Append a transaction and return it.

    `amount` is added to the prior balance as-is; debits must be negative.
    With an idempotency key, a repeated call returns the original row.
    """
    if tx_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {tx_type}")
    if reason not in TRANSACTION_REASONS:
        raise ValidationError(f"Unknown transaction reason: {reason}")
    related_item = related_item or {}

    max_attempts = get_settings().ledger_max_retries
    await acquire_lane(db, user_id)
    for attempt in range(1, max_attempts + 1):
        if idempotency_key:
            existing = await get_transaction_by_key(db, idempotency_key)
            if existing is not None:
                return existing

        prior = await get_latest_transaction(db, user_id)
        prior_balance = prior.balance_after if prior else 0
        tx = CoinTransaction(
            user_id=user_id,
            seq=(prior.seq + 1) if prior else 1,
            type=tx_type,
            amount=amount,
            balance_after=prior_balance + amount,
            reason=reason,
            description=description,
            related_item_type=related_item.get("item_type"),
            related_item_id=related_item.get("item_id"),
            tx_metadata=metadata or {},
            idempotency_key=idempotency_key,
            created_at=datetime.now(timezone.utc),
        )
        try:
            async with db.begin_nested():
                db.add(tx)
        except IntegrityError:
            # Another writer appended after our read; re-read and retry.
            logger.info("Ledger append raced for user %s (attempt %d)", user_id, attempt)
            continue

        logger.debug(
            "Ledger %s %+d for %s (%s) -> %d", tx_type, amount, user_id, reason, tx.balance_after
        )
        return tx

    logger.warning("Ledger append for %s gave up after %d attempts", user_id, max_attempts)
    raise ConflictError("Could not record transaction due to concurrent updates")


async def award_coins(
    db: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    description: str | None = None,
) -> CoinTransaction:
    """Credit coins as an `earn` transaction."""
    if amount <= 0:
        raise ValidationError("Award amount must be positive")
    return await record_transaction(db, user_id, "earn", amount, reason, description=description)


async def list_transactions(
    db: AsyncSession,
    user_id: str,
    tx_type: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[CoinTransaction], int]:
    """Return one page of the user's transactions (newest first) and the total count."""
    if tx_type is not None and tx_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {tx_type}")

    conditions = [CoinTransaction.user_id == user_id]
    if tx_type is not None:
        conditions.append(CoinTransaction.type == tx_type)

    total_result = await db.execute(
        select(func.count()).select_from(CoinTransaction).where(*conditions)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(CoinTransaction)
        .where(*conditions)
        .order_by(CoinTransaction.seq.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def verify_balance(db: AsyncSession, user_id: str) -> bool:
    """Audit check: the running balance equals the sum of all amounts and the chain is unbroken."""
    result = await db.execute(
        select(CoinTransaction)
        .where(CoinTransaction.user_id == user_id)
        .order_by(CoinTransaction.seq.asc())
    )
    running = 0
    expected_seq = 1
    for tx in result.scalars():
        running += tx.amount
        if tx.seq != expected_seq or tx.balance_after != running:
            logger.error("Ledger chain broken for %s at seq %d", user_id, tx.seq)
            return False
        expected_seq += 1
    return running == await get_balance(db, user_id)
