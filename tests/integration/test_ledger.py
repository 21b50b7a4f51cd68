"""Coin ledger tests — running balance, idempotency and append conflicts."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from engage.db.models import CoinTransaction
from engage.errors import ConflictError, ValidationError
from engage.gamification import ledger_service
from engage.gamification.ledger_service import (
    award_coins,
    get_balance,
    list_transactions,
    record_transaction,
    verify_balance,
)

pytestmark = pytest.mark.asyncio


class TestRecordTransaction:
    """Test appends and the running balance."""

    async def test_earn_then_spend(self, db_session):
        """+50 then -20 leaves a balance of 30 with each row's balance_after."""
        first = await record_transaction(db_session, "user-1", "earn", 50, "daily_login")
        second = await record_transaction(db_session, "user-1", "spend", -20, "item_purchase")
        await db_session.commit()

        assert first.balance_after == 50
        assert second.balance_after == 30
        assert (first.seq, second.seq) == (1, 2)
        assert await get_balance(db_session, "user-1") == 30
        assert await verify_balance(db_session, "user-1") is True

    async def test_empty_ledger_has_zero_balance(self, db_session):
        assert await get_balance(db_session, "nobody") == 0
        assert await verify_balance(db_session, "nobody") is True

    async def test_balances_are_per_user(self, db_session):
        await record_transaction(db_session, "user-1", "earn", 50, "bonus")
        await record_transaction(db_session, "user-2", "earn", 5, "bonus")
        assert await get_balance(db_session, "user-1") == 50
        assert await get_balance(db_session, "user-2") == 5

    async def test_related_item_and_metadata_are_stored(self, db_session):
        tx = await record_transaction(
            db_session,
            "user-1",
            "gift",
            -10,
            "gift_sent",
            description="Gift to user-2",
            related_item={"item_type": "gift", "item_id": "g-1"},
            metadata={"recipient": "user-2"},
        )
        assert tx.related_item_type == "gift"
        assert tx.related_item_id == "g-1"
        assert tx.tx_metadata == {"recipient": "user-2"}
        assert tx.balance_after == -10

    async def test_unknown_type_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await record_transaction(db_session, "user-1", "steal", 10, "other")

    async def test_unknown_reason_rejected(self, db_session):
        with pytest.raises(ValidationError):
            await record_transaction(db_session, "user-1", "earn", 10, "because")


class TestIdempotency:
    """Test idempotency keys."""

    async def test_same_key_returns_original_row(self, db_session):
        first = await record_transaction(db_session, "user-1", "earn", 100, "achievement", idempotency_key="k-1")
        again = await record_transaction(db_session, "user-1", "earn", 100, "achievement", idempotency_key="k-1")

        assert again.id == first.id
        assert await get_balance(db_session, "user-1") == 100
        count = await db_session.execute(select(func.count()).select_from(CoinTransaction))
        assert count.scalar_one() == 1


class TestAppendConflicts:
    """Test the seq compare-and-set retry."""

    async def test_stale_read_is_retried(self, db_session, monkeypatch):
        """A writer that read a stale predecessor retries and appends after the real one."""
        await record_transaction(db_session, "user-1", "earn", 50, "bonus")

        real_latest = ledger_service.get_latest_transaction
        calls = {"n": 0}

        async def stale_once(db, user_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_latest(db, user_id)

        monkeypatch.setattr(ledger_service, "get_latest_transaction", stale_once)
        tx = await record_transaction(db_session, "user-1", "earn", 10, "bonus")

        assert calls["n"] == 2
        assert tx.seq == 2
        assert tx.balance_after == 60
        monkeypatch.undo()
        assert await verify_balance(db_session, "user-1") is True

    async def test_gives_up_after_max_retries(self, db_session, monkeypatch):
        monkeypatch.setenv("ENGAGE_LEDGER_MAX_RETRIES", "2")
        await record_transaction(db_session, "user-1", "earn", 50, "bonus")

        async def always_stale(_db, _user_id):
            return None

        monkeypatch.setattr(ledger_service, "get_latest_transaction", always_stale)
        with pytest.raises(ConflictError):
            await record_transaction(db_session, "user-1", "earn", 10, "bonus")

        monkeypatch.undo()
        assert await get_balance(db_session, "user-1") == 50


class TestAwardCoins:
    """Test the earn shortcut."""

    async def test_award_is_an_earn(self, db_session):
        tx = await award_coins(db_session, "user-1", 25, "watch_content", description="Watched a film")
        assert tx.type == "earn"
        assert tx.amount == 25
        assert tx.balance_after == 25

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_award_rejected(self, db_session, amount):
        with pytest.raises(ValidationError):
            await award_coins(db_session, "user-1", amount, "bonus")


class TestListTransactions:
    """Test transaction history paging."""

    async def test_newest_first_with_total(self, db_session):
        for amount in (10, 20, 30):
            await record_transaction(db_session, "user-1", "earn", amount, "bonus")
        await record_transaction(db_session, "user-1", "spend", -5, "item_purchase")

        page, total = await list_transactions(db_session, "user-1", page=1, limit=2)
        assert total == 4
        assert [tx.amount for tx in page] == [-5, 30]

        page, _ = await list_transactions(db_session, "user-1", page=2, limit=2)
        assert [tx.amount for tx in page] == [20, 10]

    async def test_filter_by_type(self, db_session):
        await record_transaction(db_session, "user-1", "earn", 10, "bonus")
        await record_transaction(db_session, "user-1", "spend", -5, "item_purchase")
        page, total = await list_transactions(db_session, "user-1", tx_type="spend")
        assert total == 1
        assert page[0].amount == -5
