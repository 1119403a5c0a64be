"""
Transaction Ledger

Append-only, per-account ordered log of earned/spent token events. It is the
source of truth for every balance.

CRITICAL: appends for one account are serialized by a per-account lock, and
the store rejects a second commit of the same sequence number, so the
balance check and the write can never interleave with another append for
that account. Negative balances are impossible.

- Idempotent: the same idempotency key commits at most once per account;
  a replay returns the record committed first, and reusing a key for a
  different amount or kind is rejected
- Ordered: sequence_no starts at 1 and increases by one per commit;
  timestamps never decrease along the sequence
- Immutable: records are never updated or deleted
"""

import logging
import math
from datetime import datetime
from typing import AsyncIterator, List, Optional, Union

from .balance import BalanceAggregator
from .concurrency import KeyedLocks, retry_on_conflict
from .config import DEFAULT_CATEGORY
from .errors import DuplicateTransaction, InsufficientBalance, ValidationError
from .models import (
    Pagination,
    TokenTransaction,
    TransactionKind,
    TransactionPage,
    utc_now,
)
from .store import BillingStore

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 200
MAX_KEY_LENGTH = 200


def parse_kind(kind: Union[str, TransactionKind, None]) -> Optional[TransactionKind]:
    if kind is None or kind == "":
        return None
    try:
        return TransactionKind(kind)
    except ValueError:
        raise ValidationError(f"Invalid transaction kind: {kind}. Valid options: earned, spent")


class TransactionQuery:
    """
    Lazy, timestamp-descending scan of one account's ledger.

    Each ``async for`` starts a fresh paged scan, so the query can be
    iterated again (e.g. to restart an export).
    """

    def __init__(
        self,
        store: BillingStore,
        account_id: str,
        since: Optional[datetime] = None,
        kind: Optional[TransactionKind] = None,
        page_size: int = 100,
    ):
        self.store = store
        self.account_id = account_id
        self.since = since
        self.kind = kind
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[TokenTransaction]:
        return self._scan()

    async def _scan(self) -> AsyncIterator[TokenTransaction]:
        before = None
        while True:
            page = await self.store.fetch_transactions(
                self.account_id,
                before_sequence=before,
                since=self.since,
                kind=self.kind,
                limit=self.page_size
            )
            for txn in page:
                yield txn
            if len(page) < self.page_size:
                return
            before = page[-1].sequence_no

    async def collect(self, limit: Optional[int] = None) -> List[TokenTransaction]:
        rows = []
        async for txn in self:
            rows.append(txn)
            if limit is not None and len(rows) >= limit:
                break
        return rows


class TransactionLedger:

    def __init__(
        self,
        store: BillingStore,
        balances: BalanceAggregator,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        page_size: int = 100,
        clock=utc_now,
    ):
        self.store = store
        self.balances = balances
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.page_size = page_size
        self.clock = clock
        self._locks = KeyedLocks("ledger")

    async def append(
        self,
        account_id: str,
        amount: int,
        kind: Union[str, TransactionKind],
        idempotency_key: str,
        *,
        category: str = DEFAULT_CATEGORY,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> TokenTransaction:
        """
        Commit one earn/spend event.

        Raises:
            ValidationError: malformed input, or a key reused with different
                parameters (nothing is written)
            InsufficientBalance: a spend would take available below zero
            ConcurrencyConflict: lost the sequence race after all retries
        """
        txn_kind = self._validate(account_id, amount, kind, idempotency_key, category)

        async with self._locks.for_key(account_id):
            existing = await self.store.get_transaction_by_key(account_id, idempotency_key)
            if existing:
                return self._replayed(existing, amount, txn_kind)

            return await retry_on_conflict(
                lambda: self._commit(
                    account_id, amount, txn_kind, idempotency_key,
                    category, description, reference_id
                ),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                label=f"ledger append {account_id}"
            )

    async def _commit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        idempotency_key: str,
        category: str,
        description: Optional[str],
        reference_id: Optional[str],
    ) -> TokenTransaction:
        snap = await self.balances.snapshot(account_id)

        if kind is TransactionKind.SPENT and snap.available < amount:
            logger.info(
                f"Rejected spend of {amount} tokens for account {account_id}: "
                f"available {snap.available}"
            )
            raise InsufficientBalance(available=snap.available, requested=amount)

        timestamp = self.clock()
        if snap.last_timestamp and timestamp < snap.last_timestamp:
            timestamp = snap.last_timestamp

        resulting = snap.available + amount if kind is TransactionKind.EARNED else snap.available - amount
        txn = TokenTransaction(
            account_id=account_id,
            sequence_no=snap.sequence_no + 1,
            timestamp=timestamp,
            amount=amount,
            kind=kind,
            idempotency_key=idempotency_key,
            resulting_available=resulting,
            category=category,
            description=description,
            reference_id=reference_id
        )

        try:
            await self.store.insert_transaction(txn)
        except DuplicateTransaction as e:
            # Same key committed by another process after our key lookup
            return self._replayed(e.existing, amount, kind)

        self.balances.publish(snap.apply(txn))
        logger.info(
            f"Committed {kind.value} {amount} tokens for account {account_id} "
            f"(seq={txn.sequence_no}, available={resulting})"
        )
        return txn

    def _replayed(self, existing: TokenTransaction, amount: int, kind: TransactionKind) -> TokenTransaction:
        if existing.amount != amount or existing.kind is not kind:
            logger.warning(
                f"Idempotency key {existing.idempotency_key} replayed with different parameters "
                f"for account {existing.account_id}"
            )
            raise ValidationError(
                f"idempotency_key {existing.idempotency_key} was already used for "
                f"{existing.kind.value} {existing.amount}",
                details={"transaction_id": existing.id}
            )
        logger.info(f"Replay of {existing.idempotency_key} for account {existing.account_id}")
        return existing

    def _validate(
        self,
        account_id: str,
        amount: int,
        kind: Union[str, TransactionKind],
        idempotency_key: str,
        category: str,
    ) -> TransactionKind:
        if not account_id or not isinstance(account_id, str):
            raise ValidationError("account_id is required")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount must be an integer number of tokens")
        if amount <= 0:
            raise ValidationError("amount must be greater than zero")
        if not idempotency_key or not isinstance(idempotency_key, str):
            raise ValidationError("idempotency_key is required")
        if len(idempotency_key) > MAX_KEY_LENGTH:
            raise ValidationError(f"idempotency_key must be at most {MAX_KEY_LENGTH} characters")
        if not category or not isinstance(category, str):
            raise ValidationError("category must be a non-empty string")

        txn_kind = parse_kind(kind)
        if txn_kind is None:
            raise ValidationError("kind is required")
        return txn_kind

    def list(
        self,
        account_id: str,
        since: Optional[datetime] = None,
        kind: Union[str, TransactionKind, None] = None,
    ) -> TransactionQuery:
        return TransactionQuery(
            self.store,
            account_id,
            since=since,
            kind=parse_kind(kind),
            page_size=self.page_size
        )

    async def page(
        self,
        account_id: str,
        page: int = 1,
        limit: int = 20,
        kind: Union[str, TransactionKind, None] = None,
        since: Optional[datetime] = None,
    ) -> TransactionPage:
        """One page of history, newest first, with pagination info."""
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")

        txn_kind = parse_kind(kind)
        total = await self.store.count_transactions(account_id, kind=txn_kind, since=since)
        rows = await self.store.fetch_transactions(
            account_id,
            since=since,
            kind=txn_kind,
            offset=(page - 1) * limit,
            limit=limit
        )
        total_pages = max(1, math.ceil(total / limit))

        return TransactionPage(
            transactions=rows,
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                total_transactions=total,
                has_next=page < total_pages,
                has_prev=page > 1
            )
        )
