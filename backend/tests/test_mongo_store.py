"""
Test Suite: MongoDB Billing Store
=================================

Exercises the motor adapter against mocked collections:
- duplicate key errors map to DuplicateTransaction / ConcurrencyConflict
- subscription saves are compare-and-set on version
- invoice transitions are conditional on Pending
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from token_billing.errors import ConcurrencyConflict, DuplicateInvoice, DuplicateTransaction
from token_billing.models import (
    BillingCycle,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionInvoice,
    SubscriptionState,
    TokenTransaction,
    TransactionKind,
)
from token_billing.mongo_store import INVOICES, LEDGER, RESPONSES, SUBSCRIPTIONS, MongoBillingStore

from conftest import START

ACCOUNT = "acct-mongo"


def make_txn(seq=1, key="k-1") -> TokenTransaction:
    return TokenTransaction(
        account_id=ACCOUNT,
        sequence_no=seq,
        timestamp=START,
        amount=100,
        kind=TransactionKind.EARNED,
        idempotency_key=key,
        resulting_available=100
    )


def make_state(version=0) -> SubscriptionState:
    return SubscriptionState(
        account_id=ACCOUNT,
        current_plan_id="advanced",
        billing_cycle=BillingCycle.MONTHLY,
        next_billing_date=START,
        version=version
    )


def make_invoice(status=InvoiceStatus.PENDING) -> SubscriptionInvoice:
    return SubscriptionInvoice(
        id="INV-TEST",
        account_id=ACCOUNT,
        date=START,
        description="Token Bundle - 100 tokens",
        amount=49,
        status=status,
        kind=InvoiceKind.BUNDLE,
        correlation_id="bundle:acct-mongo:order-1",
        token_count=100
    )


def duplicate(*fields) -> DuplicateKeyError:
    return DuplicateKeyError("E11000 duplicate key", 11000, {"keyPattern": {f: 1 for f in fields}})


class TestLedgerCollection:

    @pytest.fixture
    def collections(self):
        return {name: MagicMock() for name in (LEDGER, SUBSCRIPTIONS, INVOICES, RESPONSES)}

    @pytest.fixture
    def store(self, collections):
        db = MagicMock()
        db.__getitem__.side_effect = lambda name: collections[name]
        return MongoBillingStore(db)

    @pytest.mark.asyncio
    async def test_insert_writes_plain_values(self, store, collections):
        collections[LEDGER].insert_one = AsyncMock()

        await store.insert_transaction(make_txn())

        doc = collections[LEDGER].insert_one.call_args[0][0]
        assert doc["kind"] == "earned"
        assert doc["sequence_no"] == 1
        assert doc["account_id"] == ACCOUNT

    @pytest.mark.asyncio
    async def test_duplicate_key_is_replay(self, store, collections):
        existing = make_txn()
        collections[LEDGER].insert_one = AsyncMock(side_effect=duplicate("account_id", "idempotency_key"))
        collections[LEDGER].find_one = AsyncMock(return_value=existing.model_dump(mode="json"))

        with pytest.raises(DuplicateTransaction) as exc_info:
            await store.insert_transaction(make_txn(seq=2))

        assert exc_info.value.existing.id == existing.id

    @pytest.mark.asyncio
    async def test_duplicate_sequence_is_conflict(self, store, collections):
        collections[LEDGER].insert_one = AsyncMock(side_effect=duplicate("account_id", "sequence_no"))

        with pytest.raises(ConcurrencyConflict):
            await store.insert_transaction(make_txn(key="k-2"))

    @pytest.mark.asyncio
    async def test_fetch_builds_query(self, store, collections):
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.skip.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[make_txn().model_dump(mode="json")])
        collections[LEDGER].find.return_value = cursor

        rows = await store.fetch_transactions(
            ACCOUNT, before_sequence=10, kind=TransactionKind.SPENT, since=START, limit=5
        )

        query = collections[LEDGER].find.call_args[0][0]
        assert query == {
            "account_id": ACCOUNT,
            "sequence_no": {"$lt": 10},
            "timestamp": {"$gte": START},
            "kind": "spent",
        }
        cursor.sort.assert_called_once_with("sequence_no", -1)
        cursor.limit.assert_called_once_with(5)
        assert rows[0].sequence_no == 1

    @pytest.mark.asyncio
    async def test_latest_sequence_of_empty_ledger(self, store, collections):
        collections[LEDGER].find_one = AsyncMock(return_value=None)

        assert await store.latest_sequence(ACCOUNT) == 0


class TestSubscriptionAndInvoiceCollections:

    @pytest.fixture
    def collections(self):
        return {name: MagicMock() for name in (LEDGER, SUBSCRIPTIONS, INVOICES, RESPONSES)}

    @pytest.fixture
    def store(self, collections):
        db = MagicMock()
        db.__getitem__.side_effect = lambda name: collections[name]
        return MongoBillingStore(db)

    @pytest.mark.asyncio
    async def test_first_save_inserts(self, store, collections):
        collections[SUBSCRIPTIONS].insert_one = AsyncMock()

        saved = await store.save_subscription(make_state(version=0))

        assert saved.version == 1
        doc = collections[SUBSCRIPTIONS].insert_one.call_args[0][0]
        assert doc["status"] == "active"
        assert doc["billing_cycle"] == "monthly"

    @pytest.mark.asyncio
    async def test_save_is_compare_and_set(self, store, collections):
        collections[SUBSCRIPTIONS].replace_one = AsyncMock(return_value=MagicMock(matched_count=1))

        saved = await store.save_subscription(make_state(version=3))

        assert saved.version == 4
        query = collections[SUBSCRIPTIONS].replace_one.call_args[0][0]
        assert query == {"account_id": ACCOUNT, "version": 3}

    @pytest.mark.asyncio
    async def test_stale_version_is_conflict(self, store, collections):
        collections[SUBSCRIPTIONS].replace_one = AsyncMock(return_value=MagicMock(matched_count=0))

        with pytest.raises(ConcurrencyConflict):
            await store.save_subscription(make_state(version=3))

    @pytest.mark.asyncio
    async def test_duplicate_correlation_returns_existing_invoice(self, store, collections):
        collections[INVOICES].insert_one = AsyncMock(side_effect=duplicate("correlation_id"))
        collections[INVOICES].find_one = AsyncMock(return_value=make_invoice().model_dump(mode="json"))

        with pytest.raises(DuplicateInvoice) as exc_info:
            await store.insert_invoice(make_invoice())

        assert exc_info.value.existing.id == "INV-TEST"

    @pytest.mark.asyncio
    async def test_transition_is_conditional_on_pending(self, store, collections):
        paid = make_invoice(status=InvoiceStatus.PAID).model_dump(mode="json")
        collections[INVOICES].find_one_and_update = AsyncMock(return_value=paid)

        updated = await store.transition_invoice("INV-TEST", InvoiceStatus.PAID, START)

        assert updated.status is InvoiceStatus.PAID
        query, update = collections[INVOICES].find_one_and_update.call_args[0][:2]
        assert query == {"id": "INV-TEST", "status": "Pending"}
        assert update["$set"]["status"] == "Paid"

    @pytest.mark.asyncio
    async def test_transition_of_terminal_invoice(self, store, collections):
        collections[INVOICES].find_one_and_update = AsyncMock(return_value=None)

        assert await store.transition_invoice("INV-TEST", InvoiceStatus.FAILED, START) is None

    @pytest.mark.asyncio
    async def test_first_stored_response_wins(self, store, collections):
        collections[RESPONSES].update_one = AsyncMock()
        collections[RESPONSES].find_one = AsyncMock(return_value={"payload": {"plan": "advanced"}})

        stored = await store.save_response(ACCOUNT, "sub-1", {"plan": "enterprise"})

        assert stored == {"plan": "advanced"}
        update = collections[RESPONSES].update_one.call_args[0][1]
        assert update == {"$setOnInsert": {"payload": {"plan": "enterprise"}}}
