"""
Analytics Aggregator

Usage breakdowns, earned/spent timelines and summary stats. Every figure is
a streaming fold over the ledger query for the requested window; history is
never loaded into memory as a whole.

A store failure here is reported as AnalyticsUnavailable so the dashboard
can degrade without affecting balance or ledger reads.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .balance import BalanceAggregator
from .config import (
    ANALYTICS_PERIODS,
    BUNDLE_PURCHASE_CATEGORY,
    DEFAULT_ANALYTICS_PERIOD,
    RECENT_TRANSACTIONS_LIMIT,
)
from .errors import AnalyticsUnavailable, BillingError, ValidationError
from .ledger import TransactionLedger
from .models import (
    TimelineBucket,
    TokenStats,
    TransactionKind,
    UsageBreakdownItem,
    utc_now,
)

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
TIMELINE_VIEWS = ("weekly", "monthly")
MONTHLY_TIMELINE_WEEKS = 4


class AnalyticsAggregator:

    def __init__(self, ledger: TransactionLedger, balances: BalanceAggregator, *, clock=utc_now):
        self.ledger = ledger
        self.balances = balances
        self.clock = clock

    def period_start(self, period: Optional[str]) -> Optional[datetime]:
        period = (period or DEFAULT_ANALYTICS_PERIOD).lower()
        if period not in ANALYTICS_PERIODS:
            raise ValidationError(
                f"Invalid period: {period}. Valid options: {list(ANALYTICS_PERIODS.keys())}"
            )
        days = ANALYTICS_PERIODS[period]
        return self.clock() - timedelta(days=days) if days is not None else None

    async def usage_breakdown(self, account_id: str, period: Optional[str] = None) -> List[UsageBreakdownItem]:
        """
        Per-category usage over a rolling window ending now.

        tokens_used is what was spent in the category; unused is what was
        earned in the category minus tokens_used, floored at zero. Rows are
        ordered by tokens_used descending, then category name.
        """
        since = self.period_start(period)
        used: Dict[str, int] = defaultdict(int)
        earned: Dict[str, int] = defaultdict(int)

        try:
            async for txn in self.ledger.list(account_id, since=since):
                if txn.kind is TransactionKind.SPENT:
                    used[txn.category] += txn.amount
                else:
                    earned[txn.category] += txn.amount
        except BillingError:
            raise
        except Exception as e:
            logger.error(f"Usage breakdown failed for account {account_id}: {e}")
            raise AnalyticsUnavailable(f"Usage breakdown unavailable: {e}") from e

        categories = set(used) | set(earned)
        rows = [
            UsageBreakdownItem(
                category=category,
                tokens_used=used[category],
                unused=max(0, earned[category] - used[category])
            )
            for category in categories
        ]
        rows.sort(key=lambda row: (-row.tokens_used, row.category))
        return rows

    async def usage_timeline(self, account_id: str, view: str = "weekly") -> List[TimelineBucket]:
        """
        Earned/spent buckets: Mon..Sun over the last 7 days, or Week 1..4 over
        the last 28 days. Windows start at midnight so today is always the
        last day and each weekday appears once.
        """
        view = (view or "weekly").lower()
        if view not in TIMELINE_VIEWS:
            raise ValidationError(f"Invalid view: {view}. Valid options: {list(TIMELINE_VIEWS)}")

        today = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        if view == "weekly":
            since = today - timedelta(days=6)
            buckets = [TimelineBucket(name=name) for name in WEEKDAY_NAMES]
        else:
            since = today - timedelta(days=7 * MONTHLY_TIMELINE_WEEKS - 1)
            buckets = [TimelineBucket(name=f"Week {i + 1}") for i in range(MONTHLY_TIMELINE_WEEKS)]

        try:
            async for txn in self.ledger.list(account_id, since=since):
                if view == "weekly":
                    bucket = buckets[txn.timestamp.weekday()]
                else:
                    index = min((txn.timestamp - since).days // 7, MONTHLY_TIMELINE_WEEKS - 1)
                    bucket = buckets[index]
                if txn.kind is TransactionKind.EARNED:
                    bucket.earned += txn.amount
                else:
                    bucket.spent += txn.amount
        except BillingError:
            raise
        except Exception as e:
            logger.error(f"Usage timeline failed for account {account_id}: {e}")
            raise AnalyticsUnavailable(f"Usage timeline unavailable: {e}") from e

        return buckets

    async def token_stats(self, account_id: str) -> TokenStats:
        since = self.period_start("month")
        monthly_usage = 0
        purchased = 0
        by_category: Dict[str, int] = defaultdict(int)

        try:
            balance = await self.balances.get_balance(account_id)
            recent = await self.ledger.list(account_id).collect(limit=RECENT_TRANSACTIONS_LIMIT)

            async for txn in self.ledger.list(account_id, kind=TransactionKind.EARNED):
                if txn.category == BUNDLE_PURCHASE_CATEGORY:
                    purchased += txn.amount

            async for txn in self.ledger.list(account_id, since=since, kind=TransactionKind.SPENT):
                monthly_usage += txn.amount
                by_category[txn.category] += txn.amount
        except BillingError:
            raise
        except Exception as e:
            logger.error(f"Token stats failed for account {account_id}: {e}")
            raise AnalyticsUnavailable(f"Token stats unavailable: {e}") from e

        return TokenStats(
            current_balance=balance.available,
            total_purchased=purchased,
            monthly_usage=monthly_usage,
            usage_by_category=dict(by_category),
            recent_transactions=recent
        )
