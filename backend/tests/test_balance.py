"""
Test Suite: Balance Aggregator
==============================

- available = total - spent for every snapshot
- cached snapshots are refreshed from the store when other writers commit
- publication never replaces a newer snapshot with an older one
"""

import pytest

from token_billing.balance import BalanceAggregator
from token_billing.config import BillingSettings
from token_billing.models import BalanceSnapshot, TokenTransaction, TransactionKind
from token_billing.service import BillingService

from conftest import START

ACCOUNT = "acct-balance"


def txn(seq: int, amount: int, kind: TransactionKind, available: int) -> TokenTransaction:
    return TokenTransaction(
        account_id=ACCOUNT,
        sequence_no=seq,
        timestamp=START,
        amount=amount,
        kind=kind,
        idempotency_key=f"k-{seq}",
        resulting_available=available
    )


class TestSnapshot:

    def test_apply_folds_earned_and_spent(self):
        snap = BalanceSnapshot(account_id=ACCOUNT)
        snap = snap.apply(txn(1, 100, TransactionKind.EARNED, 100))
        snap = snap.apply(txn(2, 30, TransactionKind.SPENT, 70))

        assert (snap.available, snap.total, snap.spent) == (70, 100, 30)
        assert snap.sequence_no == 2
        assert snap.last_timestamp == START

    @pytest.mark.asyncio
    async def test_unknown_account_reads_as_zero(self, store):
        balances = BalanceAggregator(store)

        balance = await balances.get_balance("acct-nobody")

        assert (balance.available, balance.total, balance.spent) == (0, 0, 0)

    def test_publish_never_regresses(self):
        balances = BalanceAggregator(store=None)
        newer = BalanceSnapshot(account_id=ACCOUNT, sequence_no=5, available=50, total=50)
        older = BalanceSnapshot(account_id=ACCOUNT, sequence_no=3, available=30, total=30)

        balances.publish(newer)
        kept = balances.publish(older)

        assert kept is newer
        assert balances.cached(ACCOUNT).sequence_no == 5


class TestFoldFromStore:

    @pytest.mark.asyncio
    async def test_fresh_aggregator_folds_full_history(self, service, store):
        await service.grant_tokens(ACCOUNT, 100, "seed")
        await service.spend_tokens(ACCOUNT, 30, "spend-1")
        await service.spend_tokens(ACCOUNT, 5, "spend-2")

        cold = BalanceAggregator(store, page_size=2)
        balance = await cold.get_balance(ACCOUNT)

        assert (balance.available, balance.total, balance.spent) == (65, 100, 35)

    @pytest.mark.asyncio
    async def test_second_process_sees_committed_writes(self, store, clock):
        settings = BillingSettings(ledger_retry_backoff_seconds=0)
        first = BillingService(store, settings, clock=clock)
        second = BillingService(store, settings, clock=clock)

        await first.grant_tokens(ACCOUNT, 100, "seed")
        spend = await second.spend_tokens(ACCOUNT, 30, "spend-1")

        assert spend.sequence_no == 2
        assert spend.resulting_available == 70
        assert (await first.balances.get_balance(ACCOUNT)).available == 70

    @pytest.mark.asyncio
    async def test_invariant_holds_through_scenario(self, service, clock):
        """100 -> spend 30 -> bundle credit 20 -> rejected spend of 95."""
        from token_billing.errors import InsufficientBalance
        from token_billing.models import InvoiceKind

        await service.grant_tokens(ACCOUNT, 100, "seed")
        balance = await service.balances.get_balance(ACCOUNT)
        assert (balance.available, balance.total, balance.spent) == (100, 100, 0)

        await service.spend_tokens(ACCOUNT, 30, "spend-30")
        balance = await service.balances.get_balance(ACCOUNT)
        assert (balance.available, balance.total, balance.spent) == (70, 100, 30)

        invoice = await service.invoices.create(
            ACCOUNT, 9.0, "Token Bundle - 20 tokens", "bundle:test:20",
            InvoiceKind.BUNDLE, token_count=20
        )
        await service.settle_invoice(invoice.id, "paid")
        balance = await service.balances.get_balance(ACCOUNT)
        assert (balance.available, balance.total, balance.spent) == (90, 120, 30)

        with pytest.raises(InsufficientBalance):
            await service.spend_tokens(ACCOUNT, 95, "spend-95")
        balance = await service.balances.get_balance(ACCOUNT)
        assert (balance.available, balance.total, balance.spent) == (90, 120, 30)
