"""
MongoDB Billing Store

Durable BillingStore backed by motor. Uniqueness and compare-and-set rules
of the store contract are enforced by MongoDB itself (unique indexes created
by db_init, conditional updates), so several API processes can share one
database safely.

The motor client must be created with tz_aware=True so datetimes come back
timezone-aware (see database.py).
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import ConcurrencyConflict, DuplicateInvoice, DuplicateTransaction
from .models import (
    InvoiceStatus,
    SubscriptionInvoice,
    SubscriptionState,
    SubscriptionStatus,
    TokenTransaction,
    TransactionKind,
)
from .store import BillingStore

logger = logging.getLogger(__name__)

LEDGER = "token_ledger"
SUBSCRIPTIONS = "subscription_states"
INVOICES = "billing_invoices"
RESPONSES = "idempotent_responses"

NO_ID = {"_id": 0}


def _to_doc(model) -> dict:
    """Dump a model to a BSON-friendly dict (enums as plain values)."""
    doc = model.model_dump()
    for key, value in doc.items():
        if isinstance(value, Enum):
            doc[key] = value.value
    return doc


def _duplicate_fields(error: DuplicateKeyError) -> set:
    details = error.details or {}
    return set((details.get("keyPattern") or {}).keys())


class MongoBillingStore(BillingStore):

    def __init__(self, db):
        self.db = db

    # ==================== LEDGER ====================

    async def insert_transaction(self, txn: TokenTransaction) -> None:
        try:
            await self.db[LEDGER].insert_one(_to_doc(txn))
        except DuplicateKeyError as e:
            if "idempotency_key" in _duplicate_fields(e):
                existing = await self.get_transaction_by_key(txn.account_id, txn.idempotency_key)
                if existing:
                    raise DuplicateTransaction(existing)
            logger.warning(f"Ledger sequence collision for account {txn.account_id} at {txn.sequence_no}")
            raise ConcurrencyConflict(
                f"Sequence {txn.sequence_no} already committed for account {txn.account_id}"
            )

    async def get_transaction_by_key(self, account_id: str, idempotency_key: str) -> Optional[TokenTransaction]:
        doc = await self.db[LEDGER].find_one(
            {"account_id": account_id, "idempotency_key": idempotency_key},
            NO_ID
        )
        return TokenTransaction.model_validate(doc) if doc else None

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
        query = {"account_id": account_id}

        sequence_filter = {}
        if before_sequence is not None:
            sequence_filter["$lt"] = before_sequence
        if after_sequence is not None:
            sequence_filter["$gt"] = after_sequence
        if sequence_filter:
            query["sequence_no"] = sequence_filter
        if since is not None:
            query["timestamp"] = {"$gte": since}
        if kind is not None:
            query["kind"] = TransactionKind(kind).value

        cursor = self.db[LEDGER].find(query, NO_ID).sort(
            "sequence_no", 1 if ascending else -1
        ).skip(offset).limit(limit)

        docs = await cursor.to_list(length=limit)
        return [TokenTransaction.model_validate(doc) for doc in docs]

    async def count_transactions(
        self,
        account_id: str,
        kind: Optional[TransactionKind] = None,
        since: Optional[datetime] = None,
    ) -> int:
        query = {"account_id": account_id}
        if kind is not None:
            query["kind"] = TransactionKind(kind).value
        if since is not None:
            query["timestamp"] = {"$gte": since}
        return await self.db[LEDGER].count_documents(query)

    async def latest_sequence(self, account_id: str) -> int:
        doc = await self.db[LEDGER].find_one(
            {"account_id": account_id},
            {"_id": 0, "sequence_no": 1},
            sort=[("sequence_no", -1)]
        )
        return doc["sequence_no"] if doc else 0

    # ==================== SUBSCRIPTIONS ====================

    async def get_subscription(self, account_id: str) -> Optional[SubscriptionState]:
        doc = await self.db[SUBSCRIPTIONS].find_one({"account_id": account_id}, NO_ID)
        return SubscriptionState.model_validate(doc) if doc else None

    async def save_subscription(self, state: SubscriptionState) -> SubscriptionState:
        saved = state.model_copy(update={"version": state.version + 1})
        doc = _to_doc(saved)

        if state.version == 0:
            try:
                await self.db[SUBSCRIPTIONS].insert_one(dict(doc))
            except DuplicateKeyError:
                raise ConcurrencyConflict(f"Subscription for {state.account_id} already exists")
            return saved

        result = await self.db[SUBSCRIPTIONS].replace_one(
            {"account_id": state.account_id, "version": state.version},
            doc
        )
        if result.matched_count == 0:
            raise ConcurrencyConflict(
                f"Subscription for {state.account_id} changed since version {state.version}"
            )
        return saved

    async def find_due_subscriptions(self, now: datetime, limit: int = 500) -> List[SubscriptionState]:
        query = {
            "auto_renew": True,
            "$or": [
                {"status": SubscriptionStatus.ACTIVE.value, "next_billing_date": {"$lte": now}},
                {
                    "status": SubscriptionStatus.PAST_DUE.value,
                    "$or": [{"retry_after": None}, {"retry_after": {"$lte": now}}],
                },
            ],
        }
        docs = await self.db[SUBSCRIPTIONS].find(query, NO_ID).sort(
            "next_billing_date", 1
        ).limit(limit).to_list(length=limit)
        return [SubscriptionState.model_validate(doc) for doc in docs]

    async def find_stale_renewals(self, cutoff: datetime, limit: int = 500) -> List[SubscriptionState]:
        query = {
            "status": SubscriptionStatus.PENDING_RENEWAL.value,
            "renewal_started_at": {"$lte": cutoff},
        }
        docs = await self.db[SUBSCRIPTIONS].find(query, NO_ID).limit(limit).to_list(length=limit)
        return [SubscriptionState.model_validate(doc) for doc in docs]

    # ==================== INVOICES ====================

    async def insert_invoice(self, invoice: SubscriptionInvoice) -> None:
        try:
            await self.db[INVOICES].insert_one(_to_doc(invoice))
        except DuplicateKeyError:
            doc = await self.db[INVOICES].find_one({"correlation_id": invoice.correlation_id}, NO_ID)
            if not doc:
                raise
            raise DuplicateInvoice(SubscriptionInvoice.model_validate(doc))

    async def get_invoice(self, invoice_id: str) -> Optional[SubscriptionInvoice]:
        doc = await self.db[INVOICES].find_one({"id": invoice_id}, NO_ID)
        return SubscriptionInvoice.model_validate(doc) if doc else None

    async def transition_invoice(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        settled_at: datetime,
    ) -> Optional[SubscriptionInvoice]:
        # Conditional on Pending so a terminal status can never be overwritten
        doc = await self.db[INVOICES].find_one_and_update(
            {"id": invoice_id, "status": InvoiceStatus.PENDING.value},
            {"$set": {"status": InvoiceStatus(status).value, "settled_at": settled_at}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER
        )
        return SubscriptionInvoice.model_validate(doc) if doc else None

    async def list_invoices(self, account_id: str, limit: int = 100) -> List[SubscriptionInvoice]:
        cursor = self.db[INVOICES].find({"account_id": account_id}, NO_ID).sort("date", -1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [SubscriptionInvoice.model_validate(doc) for doc in docs]

    # ==================== IDEMPOTENT RESPONSES ====================

    async def get_response(self, account_id: str, idempotency_key: str) -> Optional[dict]:
        doc = await self.db[RESPONSES].find_one(
            {"account_id": account_id, "idempotency_key": idempotency_key},
            NO_ID
        )
        return doc["payload"] if doc else None

    async def save_response(self, account_id: str, idempotency_key: str, payload: dict) -> dict:
        try:
            await self.db[RESPONSES].update_one(
                {"account_id": account_id, "idempotency_key": idempotency_key},
                {"$setOnInsert": {"payload": payload}},
                upsert=True
            )
        except DuplicateKeyError:
            # Concurrent upsert of the same key; the other writer's payload wins
            pass
        stored = await self.get_response(account_id, idempotency_key)
        return stored if stored is not None else payload
