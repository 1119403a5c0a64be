"""
Billing Store

Read/write contract between the billing core and its backing store, plus
an in-memory implementation used by tests and single-process deployments.

Contract rules every implementation must honour:
- insert_transaction raises DuplicateTransaction when the idempotency key is
  already committed for the account, and ConcurrencyConflict when the
  sequence number is not the next one for the account.
- save_subscription is a compare-and-set on ``version``: it succeeds only if
  the stored version equals ``state.version`` (0 when absent) and stores the
  state with version + 1.
- insert_invoice raises DuplicateInvoice when the correlation id exists.
- transition_invoice moves a Pending invoice to a terminal status and
  returns it, or returns None if the invoice is already terminal.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .errors import ConcurrencyConflict, DuplicateInvoice, DuplicateTransaction
from .models import (
    InvoiceStatus,
    SubscriptionInvoice,
    SubscriptionState,
    SubscriptionStatus,
    TokenTransaction,
    TransactionKind,
)


class BillingStore(ABC):

    # ==================== LEDGER ====================

    @abstractmethod
    async def insert_transaction(self, txn: TokenTransaction) -> None:
        ...

    @abstractmethod
    async def get_transaction_by_key(self, account_id: str, idempotency_key: str) -> Optional[TokenTransaction]:
        ...

    @abstractmethod
    async def fetch_transactions(
        self,
        account_id: str,
        *,
        before_sequence: Optional[int] = None,
        after_sequence: Optional[int] = None,
        since: Optional[datetime] = None,
        kind: Optional[TransactionKind] = None,
        offset: int = 0,
        limit: int = 100,
        ascending: bool = False,
    ) -> List[TokenTransaction]:
        ...

    @abstractmethod
    async def count_transactions(
        self,
        account_id: str,
        kind: Optional[TransactionKind] = None,
        since: Optional[datetime] = None,
    ) -> int:
        ...

    @abstractmethod
    async def latest_sequence(self, account_id: str) -> int:
        ...

    # ==================== SUBSCRIPTIONS ====================

    @abstractmethod
    async def get_subscription(self, account_id: str) -> Optional[SubscriptionState]:
        ...

    @abstractmethod
    async def save_subscription(self, state: SubscriptionState) -> SubscriptionState:
        ...

    @abstractmethod
    async def find_due_subscriptions(self, now: datetime, limit: int = 500) -> List[SubscriptionState]:
        ...

    @abstractmethod
    async def find_stale_renewals(self, cutoff: datetime, limit: int = 500) -> List[SubscriptionState]:
        ...

    # ==================== INVOICES ====================

    @abstractmethod
    async def insert_invoice(self, invoice: SubscriptionInvoice) -> None:
        ...

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Optional[SubscriptionInvoice]:
        ...

    @abstractmethod
    async def transition_invoice(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        settled_at: datetime,
    ) -> Optional[SubscriptionInvoice]:
        ...

    @abstractmethod
    async def list_invoices(self, account_id: str, limit: int = 100) -> List[SubscriptionInvoice]:
        ...

    # ==================== IDEMPOTENT RESPONSES ====================

    @abstractmethod
    async def get_response(self, account_id: str, idempotency_key: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def save_response(self, account_id: str, idempotency_key: str, payload: dict) -> dict:
        """Store payload unless one exists; return whichever is stored."""
        ...


class InMemoryBillingStore(BillingStore):
    """Process-local store. Not durable; use MongoBillingStore in production."""

    def __init__(self):
        self._transactions: Dict[str, List[TokenTransaction]] = {}
        self._txn_keys: Dict[Tuple[str, str], TokenTransaction] = {}
        self._subscriptions: Dict[str, SubscriptionState] = {}
        self._invoices: Dict[str, SubscriptionInvoice] = {}
        self._invoice_correlations: Dict[str, str] = {}
        self._responses: Dict[Tuple[str, str], dict] = {}

    async def insert_transaction(self, txn: TokenTransaction) -> None:
        existing = self._txn_keys.get((txn.account_id, txn.idempotency_key))
        if existing:
            raise DuplicateTransaction(existing)

        log = self._transactions.setdefault(txn.account_id, [])
        last_seq = log[-1].sequence_no if log else 0
        if txn.sequence_no != last_seq + 1:
            raise ConcurrencyConflict(
                f"Sequence {txn.sequence_no} is not next for account {txn.account_id} (last={last_seq})"
            )

        log.append(txn)
        self._txn_keys[(txn.account_id, txn.idempotency_key)] = txn

    async def get_transaction_by_key(self, account_id: str, idempotency_key: str) -> Optional[TokenTransaction]:
        return self._txn_keys.get((account_id, idempotency_key))

    async def fetch_transactions(
        self,
        account_id: str,
        *,
        before_sequence: Optional[int] = None,
        after_sequence: Optional[int] = None,
        since: Optional[datetime] = None,
        kind: Optional[TransactionKind] = None,
        offset: int = 0,
        limit: int = 100,
        ascending: bool = False,
    ) -> List[TokenTransaction]:
        log = self._transactions.get(account_id, [])
        rows = [
            txn for txn in log
            if (before_sequence is None or txn.sequence_no < before_sequence)
            and (after_sequence is None or txn.sequence_no > after_sequence)
            and (since is None or txn.timestamp >= since)
            and (kind is None or txn.kind is kind)
        ]
        if not ascending:
            rows.reverse()
        return rows[offset:offset + limit]

    async def count_transactions(
        self,
        account_id: str,
        kind: Optional[TransactionKind] = None,
        since: Optional[datetime] = None,
    ) -> int:
        log = self._transactions.get(account_id, [])
        return sum(
            1 for txn in log
            if (kind is None or txn.kind is kind)
            and (since is None or txn.timestamp >= since)
        )

    async def latest_sequence(self, account_id: str) -> int:
        log = self._transactions.get(account_id)
        return log[-1].sequence_no if log else 0

    async def get_subscription(self, account_id: str) -> Optional[SubscriptionState]:
        state = self._subscriptions.get(account_id)
        return state.model_copy(deep=True) if state else None

    async def save_subscription(self, state: SubscriptionState) -> SubscriptionState:
        current = self._subscriptions.get(state.account_id)
        current_version = current.version if current else 0
        if current_version != state.version:
            raise ConcurrencyConflict(
                f"Subscription for {state.account_id} changed (expected v{state.version}, found v{current_version})"
            )
        saved = state.model_copy(update={"version": state.version + 1}, deep=True)
        self._subscriptions[state.account_id] = saved
        return saved.model_copy(deep=True)

    async def find_due_subscriptions(self, now: datetime, limit: int = 500) -> List[SubscriptionState]:
        due = []
        for state in self._subscriptions.values():
            if not state.auto_renew:
                continue
            if state.status is SubscriptionStatus.ACTIVE and state.next_billing_date <= now:
                due.append(state)
            elif state.status is SubscriptionStatus.PAST_DUE and (
                state.retry_after is None or state.retry_after <= now
            ):
                due.append(state)
        due.sort(key=lambda s: s.next_billing_date)
        return [s.model_copy(deep=True) for s in due[:limit]]

    async def find_stale_renewals(self, cutoff: datetime, limit: int = 500) -> List[SubscriptionState]:
        stale = [
            s for s in self._subscriptions.values()
            if s.status is SubscriptionStatus.PENDING_RENEWAL
            and s.renewal_started_at is not None
            and s.renewal_started_at <= cutoff
        ]
        return [s.model_copy(deep=True) for s in stale[:limit]]

    async def insert_invoice(self, invoice: SubscriptionInvoice) -> None:
        existing_id = self._invoice_correlations.get(invoice.correlation_id)
        if existing_id:
            raise DuplicateInvoice(self._invoices[existing_id].model_copy())
        self._invoices[invoice.id] = invoice.model_copy()
        self._invoice_correlations[invoice.correlation_id] = invoice.id

    async def get_invoice(self, invoice_id: str) -> Optional[SubscriptionInvoice]:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy() if invoice else None

    async def transition_invoice(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        settled_at: datetime,
    ) -> Optional[SubscriptionInvoice]:
        invoice = self._invoices.get(invoice_id)
        if invoice is None or invoice.status is not InvoiceStatus.PENDING:
            return None
        updated = invoice.model_copy(update={"status": status, "settled_at": settled_at})
        self._invoices[invoice_id] = updated
        return updated.model_copy()

    async def list_invoices(self, account_id: str, limit: int = 100) -> List[SubscriptionInvoice]:
        rows = [inv for inv in self._invoices.values() if inv.account_id == account_id]
        rows.sort(key=lambda inv: inv.date, reverse=True)
        return [inv.model_copy() for inv in rows[:limit]]

    async def get_response(self, account_id: str, idempotency_key: str) -> Optional[dict]:
        return self._responses.get((account_id, idempotency_key))

    async def save_response(self, account_id: str, idempotency_key: str, payload: dict) -> dict:
        return self._responses.setdefault((account_id, idempotency_key), payload)
