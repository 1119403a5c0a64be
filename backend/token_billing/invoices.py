"""
Invoice Generator

Creates invoices for subscription renewals and token bundle purchases and
settles them from payment-processor callbacks.

- Creation is idempotent per correlation id (renewal attempt or purchase id)
- Pending -> Paid / Failed is the only transition; terminal states are final
- A paid bundle invoice credits the ledger exactly once, keyed by invoice id
  under the reserved "invoice:" prefix

Callbacks may arrive duplicated or out of order. Settlement effects are
re-applied on every delivery but are themselves idempotent (the ledger key
derives from the invoice id, the subscription listener checks the pending
invoice id), so a crash between the status write and the credit heals on the
next delivery.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Union

from .concurrency import KeyedLocks
from .config import BUNDLE_PURCHASE_CATEGORY
from .errors import DuplicateInvoice, NotFound, ValidationError
from .ledger import TransactionLedger
from .models import (
    BillingCycle,
    InvoiceKind,
    InvoiceStatus,
    SettlementOutcome,
    SettlementResult,
    SubscriptionInvoice,
    TransactionKind,
    utc_now,
)
from .store import BillingStore

logger = logging.getLogger(__name__)

SettlementListener = Callable[[SubscriptionInvoice], Awaitable[None]]


def invoice_credit_key(invoice_id: str) -> str:
    """Ledger key for tokens credited by a paid invoice; callers never get this prefix."""
    return f"invoice:{invoice_id}"


def parse_outcome(outcome: Union[str, SettlementOutcome]) -> SettlementOutcome:
    if isinstance(outcome, SettlementOutcome):
        return outcome
    try:
        return SettlementOutcome(str(outcome).lower())
    except ValueError:
        raise ValidationError(f"Invalid settlement outcome: {outcome}. Valid options: paid, failed")


class InvoiceGenerator:

    def __init__(self, store: BillingStore, ledger: TransactionLedger, *, clock=utc_now):
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self._locks = KeyedLocks("invoices")
        self._listeners: List[SettlementListener] = []

    def add_settlement_listener(self, listener: SettlementListener) -> None:
        """Register a coroutine called with every settled invoice."""
        self._listeners.append(listener)

    async def create(
        self,
        account_id: str,
        amount: float,
        description: str,
        correlation_id: str,
        kind: InvoiceKind,
        *,
        token_count: Optional[int] = None,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> SubscriptionInvoice:
        """Create a Pending invoice, or return the one already issued for correlation_id."""
        if not account_id:
            raise ValidationError("account_id is required")
        if amount is None or amount < 0:
            raise ValidationError("amount must not be negative")
        if not description:
            raise ValidationError("description is required")
        if not correlation_id:
            raise ValidationError("correlation_id is required")
        if kind is InvoiceKind.BUNDLE and (not token_count or token_count <= 0):
            raise ValidationError("bundle invoices need a positive token_count")

        async with self._locks.for_key(correlation_id):
            invoice = SubscriptionInvoice(
                account_id=account_id,
                date=self.clock(),
                description=description,
                amount=amount,
                kind=kind,
                correlation_id=correlation_id,
                token_count=token_count,
                plan_id=plan_id,
                billing_cycle=billing_cycle
            )
            try:
                await self.store.insert_invoice(invoice)
            except DuplicateInvoice as e:
                logger.info(f"Invoice for {correlation_id} already exists: {e.existing.id}")
                return e.existing

        logger.info(f"Created invoice {invoice.id} for account {account_id}: {description} ({amount})")
        return invoice

    async def settle(self, invoice_id: str, outcome: Union[str, SettlementOutcome]) -> SettlementResult:
        """
        Apply a payment outcome to a Pending invoice.

        Returns already_settled=True (and changes nothing) when the invoice
        is already Paid or Failed.
        """
        settlement = parse_outcome(outcome)
        target = InvoiceStatus.PAID if settlement is SettlementOutcome.PAID else InvoiceStatus.FAILED

        async with self._locks.for_key(invoice_id):
            invoice = await self.store.get_invoice(invoice_id)
            if invoice is None:
                raise NotFound("Invoice", invoice_id)

            updated = await self.store.transition_invoice(invoice_id, target, self.clock())
            if updated is None:
                current = await self.store.get_invoice(invoice_id)
                if current.status is not target:
                    logger.warning(
                        f"Invoice {invoice_id} already {current.status.value}; ignoring {settlement.value} callback"
                    )
                else:
                    logger.info(f"Invoice {invoice_id} already settled ({current.status.value})")
                await self._apply_effects(current)
                return SettlementResult(invoice=current, already_settled=True)

            if target is InvoiceStatus.FAILED:
                logger.warning(f"Payment failed for invoice {invoice_id} (account {updated.account_id})")
            else:
                logger.info(f"Invoice {invoice_id} paid (account {updated.account_id})")

            await self._apply_effects(updated)
            return SettlementResult(invoice=updated)

    async def _apply_effects(self, invoice: SubscriptionInvoice) -> None:
        if invoice.status is InvoiceStatus.PAID and invoice.kind is InvoiceKind.BUNDLE:
            await self.ledger.append(
                invoice.account_id,
                invoice.token_count,
                TransactionKind.EARNED,
                invoice_credit_key(invoice.id),
                category=BUNDLE_PURCHASE_CATEGORY,
                description=invoice.description,
                reference_id=invoice.id
            )

        for listener in self._listeners:
            await listener(invoice)

    async def get(self, invoice_id: str, account_id: Optional[str] = None) -> SubscriptionInvoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None or (account_id is not None and invoice.account_id != account_id):
            raise NotFound("Invoice", invoice_id)
        return invoice

    async def history(self, account_id: str, limit: int = 100) -> List[SubscriptionInvoice]:
        return await self.store.list_invoices(account_id, limit=limit)
