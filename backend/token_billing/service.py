"""
Billing Service - wires the billing core together

One BillingService per process. It owns the ledger, balance cache,
analytics, invoice generator and subscription manager over a single
BillingStore, and exposes the operations used by the API routes and the
renewal scheduler. Every call takes the account id explicitly.
"""

import logging
from typing import AsyncIterator, Optional, Union

from .analytics import AnalyticsAggregator
from .balance import BalanceAggregator
from .concurrency import KeyedLocks
from .config import ADMIN_GRANT_CATEGORY, DEFAULT_CATEGORY, RECENT_TRANSACTIONS_LIMIT, BillingSettings
from .errors import AnalyticsUnavailable, ValidationError
from .export import transactions_csv
from .invoices import InvoiceGenerator
from .ledger import TransactionLedger
from .models import (
    BillingCycle,
    InvoiceKind,
    SettlementOutcome,
    SettlementResult,
    SubscriptionInvoice,
    SubscriptionState,
    SubscriptionStatus,
    TokenTransaction,
    TransactionKind,
    utc_now,
)
from .plans import get_bundle, get_plan, parse_cycle
from .store import BillingStore, InMemoryBillingStore
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


def client_key(namespace: str, idempotency_key: str) -> str:
    """
    Ledger key for a caller-supplied idempotency key.

    Client spends and admin grants get their own namespaces, so neither can
    replay the other or an invoice credit (see invoice_credit_key).
    """
    if not idempotency_key:
        raise ValidationError("idempotency_key is required")
    return f"{namespace}:{idempotency_key}"


def build_store(settings: BillingSettings, db=None) -> BillingStore:
    """Create the store selected by BILLING_STORE."""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory billing store; data will not survive a restart")
        return InMemoryBillingStore()
    if settings.store_backend == "mongo":
        if db is None:
            raise ValueError("BILLING_STORE=mongo requires a database handle")
        from .mongo_store import MongoBillingStore
        return MongoBillingStore(db)
    raise ValueError(f"Unknown BILLING_STORE: {settings.store_backend}. Valid options: memory, mongo")


class BillingService:

    def __init__(self, store: BillingStore, settings: Optional[BillingSettings] = None, *, clock=utc_now):
        self.store = store
        self.settings = settings or BillingSettings()
        self.clock = clock

        self.balances = BalanceAggregator(store, page_size=self.settings.ledger_page_size)
        self.ledger = TransactionLedger(
            store,
            self.balances,
            max_retries=self.settings.ledger_max_retries,
            backoff_seconds=self.settings.ledger_retry_backoff_seconds,
            page_size=self.settings.ledger_page_size,
            clock=clock
        )
        self.invoices = InvoiceGenerator(store, self.ledger, clock=clock)
        self.subscriptions = SubscriptionManager(
            store,
            self.invoices,
            self.ledger,
            grace_period_hours=self.settings.renewal_grace_period_hours,
            past_due_retry_hours=self.settings.past_due_retry_hours,
            max_retries=self.settings.ledger_max_retries,
            backoff_seconds=self.settings.ledger_retry_backoff_seconds,
            clock=clock
        )
        self.analytics = AnalyticsAggregator(self.ledger, self.balances, clock=clock)
        self._response_locks = KeyedLocks("responses")

    # ==================== TOKENS ====================

    async def spend_tokens(
        self,
        account_id: str,
        amount: int,
        idempotency_key: str,
        category: str = DEFAULT_CATEGORY,
        description: Optional[str] = None,
    ) -> TokenTransaction:
        return await self.ledger.append(
            account_id,
            amount,
            TransactionKind.SPENT,
            client_key("spend", idempotency_key),
            category=category or DEFAULT_CATEGORY,
            description=description
        )

    async def grant_tokens(
        self,
        account_id: str,
        amount: int,
        idempotency_key: str,
        reason: str = ADMIN_GRANT_CATEGORY,
    ) -> TokenTransaction:
        txn = await self.ledger.append(
            account_id,
            amount,
            TransactionKind.EARNED,
            client_key("admin", idempotency_key),
            category=ADMIN_GRANT_CATEGORY,
            description=reason
        )
        logger.info(f"Admin credited {amount} tokens to {account_id}: {reason}")
        return txn

    async def purchase_bundle(self, account_id: str, bundle_id: str, idempotency_key: str) -> SubscriptionInvoice:
        """Issue a Pending invoice for a bundle; tokens are credited when it is paid."""
        bundle = get_bundle(bundle_id)
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        return await self.invoices.create(
            account_id,
            bundle.price,
            f"Token Bundle - {bundle.token_count} tokens",
            f"bundle:{account_id}:{idempotency_key}",
            InvoiceKind.BUNDLE,
            token_count=bundle.token_count
        )

    def export_transactions(self, account_id: str) -> AsyncIterator[str]:
        return transactions_csv(self.ledger.list(account_id))

    async def overview(self, account_id: str, period: Optional[str] = None) -> dict:
        """Balance and recent activity; analytics is None when it cannot be computed."""
        balance = await self.balances.get_balance(account_id)
        recent = await self.ledger.list(account_id).collect(limit=RECENT_TRANSACTIONS_LIMIT)

        try:
            analytics = await self.analytics.usage_breakdown(account_id, period)
        except AnalyticsUnavailable as e:
            logger.warning(f"Overview for {account_id} without analytics: {e.message}")
            analytics = None

        return {
            "balance": balance,
            "recent_transactions": recent,
            "analytics": analytics,
        }

    # ==================== SUBSCRIPTIONS ====================

    async def _stored_response(self, account_id: str, response_key: str, operation) -> SubscriptionState:
        """
        Run operation once per (account, response_key) and store its result.

        A replay returns the stored state from the first call, even if the
        subscription has changed since.
        """
        async with self._response_locks.for_key(account_id):
            stored = await self.store.get_response(account_id, response_key)
            if stored is not None:
                logger.info(f"Replay of {response_key} for {account_id}")
                return SubscriptionState.model_validate(stored)

            state = await operation()
            stored = await self.store.save_response(account_id, response_key, state.model_dump(mode="json"))
            return SubscriptionState.model_validate(stored)

    async def change_subscription(
        self,
        account_id: str,
        plan_id: str,
        cycle: Union[str, BillingCycle],
        idempotency_key: str,
    ) -> SubscriptionState:
        """
        Switch plan or cycle. An Active subscription on the same cycle only
        changes plan; anything else starts a new subscription.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        plan = get_plan(plan_id)
        billing_cycle = parse_cycle(cycle)

        async def operation():
            current = await self.store.get_subscription(account_id)
            if (
                current is not None
                and current.status is SubscriptionStatus.ACTIVE
                and current.billing_cycle is billing_cycle
            ):
                return await self.subscriptions.change_plan(account_id, plan.id)
            return await self.subscriptions.subscribe(account_id, plan.id, billing_cycle)

        return await self._stored_response(account_id, f"subscription:{idempotency_key}", operation)

    async def set_auto_renew(
        self,
        account_id: str,
        enabled: Optional[bool],
        idempotency_key: str,
    ) -> SubscriptionState:
        """Toggle (enabled=None) or set auto-renew; a replayed key does not toggle again."""
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")

        async def operation():
            return await self.subscriptions.toggle_auto_renew(account_id, enabled)

        return await self._stored_response(account_id, f"auto-renew:{idempotency_key}", operation)

    # ==================== INVOICES ====================

    async def settle_invoice(self, invoice_id: str, outcome: Union[str, SettlementOutcome]) -> SettlementResult:
        return await self.invoices.settle(invoice_id, outcome)
