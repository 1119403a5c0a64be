"""
Subscription Manager

Owns the per-account subscription state and its billing-cycle transitions:

    subscribe            any state       -> Active (outstanding renewal invoice failed first)
    change_plan          Active          -> Active
    renewal_due          Active          -> PendingRenewal (invoice issued)
                         PastDue         -> PendingRenewal (retry invoice)
    invoice Paid         PendingRenewal  -> Active (next_billing_date + 1 cycle, on the anchor day)
    invoice Failed       PendingRenewal  -> PastDue (1st failure) / Canceled (2nd)

Canceled is terminal for renewals; only a new subscribe revives it.
toggle_auto_renew never changes status, it only suppresses renewal_due.

Each renewal attempt has its own correlation id, so renewal_due fired twice
for the same attempt returns the outstanding invoice instead of a new one.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

from .concurrency import KeyedLocks, retry_on_conflict
from .config import SUBSCRIPTION_GRANT_CATEGORY
from .errors import BillingError, InvalidStateTransition, NotFound
from .invoices import InvoiceGenerator, invoice_credit_key
from .ledger import TransactionLedger
from .models import (
    BillingCycle,
    InvoiceKind,
    InvoiceStatus,
    SettlementOutcome,
    SubscriptionInvoice,
    SubscriptionState,
    SubscriptionStatus,
    TransactionKind,
    utc_now,
)
from .plans import advance_cycle, get_plan, parse_cycle
from .store import BillingStore

logger = logging.getLogger(__name__)

# Consecutive failed renewal payments before the subscription is canceled
MAX_RENEWAL_FAILURES = 2


def renewal_correlation_id(state: SubscriptionState) -> str:
    attempt = state.consecutive_failures + 1
    return f"renewal:{state.account_id}:{state.cycle_number}:{attempt}"


class SubscriptionManager:

    def __init__(
        self,
        store: BillingStore,
        invoices: InvoiceGenerator,
        ledger: TransactionLedger,
        *,
        grace_period_hours: int = 72,
        past_due_retry_hours: int = 24,
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        clock=utc_now,
    ):
        self.store = store
        self.invoices = invoices
        self.ledger = ledger
        self.grace_period = timedelta(hours=grace_period_hours)
        self.past_due_retry = timedelta(hours=past_due_retry_hours)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.clock = clock
        self._locks = KeyedLocks("subscriptions")

        invoices.add_settlement_listener(self.on_invoice_settled)

    async def _serialized(self, account_id: str, operation):
        async with self._locks.for_key(account_id):
            return await retry_on_conflict(
                operation,
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                label=f"subscription {account_id}"
            )

    async def get_state(self, account_id: str) -> SubscriptionState:
        state = await self.store.get_subscription(account_id)
        if state is None:
            raise NotFound("Subscription", account_id)
        return state

    # ==================== TRANSITIONS ====================

    async def subscribe(self, account_id: str, plan_id: str, cycle: Union[str, BillingCycle]) -> SubscriptionState:
        """
        Start a subscription, replacing whatever state the account had.

        An outstanding renewal invoice is settled as failed first, so it can
        neither hang Pending nor grant the old plan's tokens if paid later.
        """
        plan = get_plan(plan_id)
        billing_cycle = parse_cycle(cycle)

        current = await self.store.get_subscription(account_id)
        if current and current.status is SubscriptionStatus.PENDING_RENEWAL and current.pending_invoice_id:
            logger.warning(
                f"Account {account_id} re-subscribed with invoice {current.pending_invoice_id} outstanding; "
                f"settling it as failed"
            )
            await self.invoices.settle(current.pending_invoice_id, SettlementOutcome.FAILED)

        async def operation():
            current = await self.store.get_subscription(account_id)
            now = self.clock()

            if current and current.status is SubscriptionStatus.PENDING_RENEWAL:
                # A renewal was issued after the outstanding invoice was closed
                raise InvalidStateTransition("subscribe", current.status.value)

            state = SubscriptionState(
                account_id=account_id,
                current_plan_id=plan.id,
                billing_cycle=billing_cycle,
                next_billing_date=advance_cycle(now, billing_cycle),
                anchor_day=now.day,
                auto_renew=current.auto_renew if current else True,
                status=SubscriptionStatus.ACTIVE,
                # Never reuse a cycle number: renewal correlation ids derive from it
                cycle_number=current.cycle_number + 1 if current else 1,
                version=current.version if current else 0,
                created_at=current.created_at if current else now,
                updated_at=now
            )
            return await self.store.save_subscription(state)

        saved = await self._serialized(account_id, operation)
        logger.info(f"Account {account_id} subscribed to {plan.id} ({billing_cycle.value})")
        return saved

    async def change_plan(self, account_id: str, plan_id: str) -> SubscriptionState:
        plan = get_plan(plan_id)

        async def operation():
            current = await self.get_state(account_id)
            if current.status is not SubscriptionStatus.ACTIVE:
                raise InvalidStateTransition("change plan", current.status.value)
            if current.current_plan_id == plan.id:
                return current
            updated = current.model_copy(update={"current_plan_id": plan.id, "updated_at": self.clock()})
            return await self.store.save_subscription(updated)

        saved = await self._serialized(account_id, operation)
        logger.info(f"Account {account_id} changed plan to {plan.id}")
        return saved

    async def toggle_auto_renew(self, account_id: str, enabled: Optional[bool] = None) -> SubscriptionState:
        async def operation():
            current = await self.get_state(account_id)
            value = (not current.auto_renew) if enabled is None else enabled
            if value == current.auto_renew:
                return current
            updated = current.model_copy(update={"auto_renew": value, "updated_at": self.clock()})
            return await self.store.save_subscription(updated)

        saved = await self._serialized(account_id, operation)
        logger.info(f"Auto-renew for account {account_id} is now {'on' if saved.auto_renew else 'off'}")
        return saved

    async def renewal_due(self, account_id: str, now: Optional[datetime] = None) -> Optional[SubscriptionInvoice]:
        """
        Fire the renewal for one account if it is due.

        Returns the renewal invoice (new or still outstanding), or None when
        nothing is due, auto-renew is off, or the subscription is canceled.
        """
        now = now or self.clock()
        missed = []

        async def operation():
            state = await self.get_state(account_id)

            if state.status is SubscriptionStatus.CANCELED:
                return None

            if state.status is SubscriptionStatus.PENDING_RENEWAL:
                invoice = await self.invoices.get(state.pending_invoice_id)
                if invoice.status is InvoiceStatus.PENDING:
                    logger.info(f"Renewal for {account_id} suppressed: invoice {invoice.id} outstanding")
                    return invoice
                # Settled but the state missed the notification
                logger.warning(f"Applying missed settlement of {invoice.id} for {account_id}")
                await self.store.save_subscription(self._settled_state(state, invoice))
                missed.append(invoice)
                return None

            if not state.auto_renew:
                return None
            if state.status is SubscriptionStatus.ACTIVE and now < state.next_billing_date:
                return None
            if state.status is SubscriptionStatus.PAST_DUE and state.retry_after and now < state.retry_after:
                return None

            plan = get_plan(state.current_plan_id)
            label = "Monthly" if state.billing_cycle is BillingCycle.MONTHLY else "Annual"
            invoice = await self.invoices.create(
                account_id,
                plan.price_for(state.billing_cycle),
                f"{label} Subscription - {plan.name} Plan",
                renewal_correlation_id(state),
                InvoiceKind.SUBSCRIPTION,
                plan_id=plan.id,
                billing_cycle=state.billing_cycle
            )

            await self.store.save_subscription(state.model_copy(update={
                "status": SubscriptionStatus.PENDING_RENEWAL,
                "pending_invoice_id": invoice.id,
                "renewal_started_at": now,
                "updated_at": now,
            }))
            logger.info(f"Renewal due for {account_id}: issued invoice {invoice.id} ({invoice.amount})")
            return invoice

        invoice = await self._serialized(account_id, operation)

        for settled in missed:
            if settled.status is InvoiceStatus.PAID:
                await self._grant_cycle_tokens(settled)

        if invoice is not None and invoice.status is InvoiceStatus.PENDING and invoice.amount == 0:
            result = await self.invoices.settle(invoice.id, SettlementOutcome.PAID)
            invoice = result.invoice

        return invoice

    # ==================== SETTLEMENT ====================

    async def on_invoice_settled(self, invoice: SubscriptionInvoice) -> None:
        """Settlement listener registered with the InvoiceGenerator."""
        if invoice.kind is not InvoiceKind.SUBSCRIPTION or invoice.status is InvoiceStatus.PENDING:
            return

        async def operation():
            state = await self.store.get_subscription(invoice.account_id)
            if (
                state is None
                or state.status is not SubscriptionStatus.PENDING_RENEWAL
                or state.pending_invoice_id != invoice.id
            ):
                logger.debug(f"Ignoring settlement of {invoice.id}: not the pending renewal")
                return state
            return await self.store.save_subscription(self._settled_state(state, invoice))

        await self._serialized(invoice.account_id, operation)

        if invoice.status is InvoiceStatus.PAID:
            await self._grant_cycle_tokens(invoice)

    def _settled_state(self, state: SubscriptionState, invoice: SubscriptionInvoice) -> SubscriptionState:
        now = self.clock()
        if invoice.status is InvoiceStatus.PAID:
            logger.info(f"Renewal paid for {state.account_id}; cycle {state.cycle_number + 1} started")
            return state.model_copy(update={
                "status": SubscriptionStatus.ACTIVE,
                "next_billing_date": advance_cycle(
                    state.next_billing_date, state.billing_cycle, state.anchor_day
                ),
                "cycle_number": state.cycle_number + 1,
                "consecutive_failures": 0,
                "pending_invoice_id": None,
                "renewal_started_at": None,
                "retry_after": None,
                "updated_at": now,
            })

        failures = state.consecutive_failures + 1
        if failures >= MAX_RENEWAL_FAILURES:
            logger.warning(f"Subscription for {state.account_id} canceled after {failures} failed payments")
            return state.model_copy(update={
                "status": SubscriptionStatus.CANCELED,
                "consecutive_failures": failures,
                "pending_invoice_id": None,
                "renewal_started_at": None,
                "retry_after": None,
                "updated_at": now,
            })

        logger.warning(f"Subscription for {state.account_id} is past due")
        return state.model_copy(update={
            "status": SubscriptionStatus.PAST_DUE,
            "consecutive_failures": failures,
            "pending_invoice_id": None,
            "renewal_started_at": None,
            "retry_after": now + self.past_due_retry,
            "updated_at": now,
        })

    async def _grant_cycle_tokens(self, invoice: SubscriptionInvoice) -> None:
        if not invoice.plan_id:
            return
        tokens = get_plan(invoice.plan_id).tokens_per_cycle
        if tokens <= 0:
            return
        await self.ledger.append(
            invoice.account_id,
            tokens,
            TransactionKind.EARNED,
            invoice_credit_key(invoice.id),
            category=SUBSCRIPTION_GRANT_CATEGORY,
            description=f"Plan token grant - {invoice.description}",
            reference_id=invoice.id
        )

    # ==================== SWEEPS ====================

    async def due_accounts(self, now: Optional[datetime] = None) -> List[str]:
        states = await self.store.find_due_subscriptions(now or self.clock())
        return [state.account_id for state in states]

    async def expire_stale_renewals(self, now: Optional[datetime] = None) -> int:
        """Settle as failed every renewal invoice pending longer than the grace period."""
        now = now or self.clock()
        stale = await self.store.find_stale_renewals(now - self.grace_period)

        expired = 0
        for state in stale:
            if not state.pending_invoice_id:
                continue
            try:
                result = await self.invoices.settle(state.pending_invoice_id, SettlementOutcome.FAILED)
            except BillingError as e:
                logger.error(f"Could not expire renewal {state.pending_invoice_id} for {state.account_id}: {e}")
                continue
            if not result.already_settled:
                expired += 1
                logger.warning(
                    f"Renewal invoice {state.pending_invoice_id} for {state.account_id} "
                    f"unresolved past grace period; treated as failed"
                )
        return expired
