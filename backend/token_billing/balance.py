"""
Balance Aggregator

Derives {available, total, spent} by folding the ledger. The fold result is
cached per account as an immutable BalanceSnapshot keyed by the last-applied
sequence number:

- a read compares the cached sequence number with the store's latest and
  folds only the newer transactions, so a hit is always a committed state
- the ledger publishes the new snapshot right after each commit
- publication never replaces a snapshot with an older one

Readers never take the account lock; they see either the snapshot before an
append or the one after it, never a mix.
"""

import logging
from typing import Dict

from .models import BalanceSnapshot, TokenBalance
from .store import BillingStore

logger = logging.getLogger(__name__)


class BalanceAggregator:

    def __init__(self, store: BillingStore, page_size: int = 100):
        self.store = store
        self.page_size = page_size
        self._snapshots: Dict[str, BalanceSnapshot] = {}

    def cached(self, account_id: str) -> BalanceSnapshot:
        return self._snapshots.get(account_id) or BalanceSnapshot(account_id=account_id)

    def publish(self, snapshot: BalanceSnapshot) -> BalanceSnapshot:
        current = self._snapshots.get(snapshot.account_id)
        if current is None or snapshot.sequence_no > current.sequence_no:
            self._snapshots[snapshot.account_id] = snapshot
            return snapshot
        return current

    async def snapshot(self, account_id: str) -> BalanceSnapshot:
        """Latest committed snapshot, folding any transactions not yet applied."""
        snap = self.cached(account_id)
        latest = await self.store.latest_sequence(account_id)
        if latest <= snap.sequence_no:
            return snap

        while snap.sequence_no < latest:
            page = await self.store.fetch_transactions(
                account_id,
                after_sequence=snap.sequence_no,
                ascending=True,
                limit=self.page_size
            )
            if not page:
                break
            for txn in page:
                snap = snap.apply(txn)

        if snap.available < 0:
            logger.error(f"Ledger for account {account_id} folds to negative balance at seq {snap.sequence_no}")

        return self.publish(snap)

    async def get_balance(self, account_id: str) -> TokenBalance:
        snap = await self.snapshot(account_id)
        return snap.balance
