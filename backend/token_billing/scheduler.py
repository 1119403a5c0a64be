"""
Renewal scheduler jobs

Two periodic jobs on the application's AsyncIOScheduler:
- renewal_sweep: fires renewal_due for every subscription that is due
- stale_renewal_sweep: settles as failed any renewal invoice left Pending
  past the grace period

A failure for one account is logged and the sweep moves on.
"""

import logging
from datetime import datetime
from typing import Optional

from .config import BillingSettings
from .service import BillingService

logger = logging.getLogger(__name__)

RENEWAL_SWEEP_JOB_ID = "renewal_sweep"
STALE_RENEWAL_SWEEP_JOB_ID = "stale_renewal_sweep"


async def run_renewal_sweep(service: BillingService, now: Optional[datetime] = None) -> int:
    """Fire renewal_due for every due subscription. Returns invoices issued."""
    now = now or service.clock()
    account_ids = await service.subscriptions.due_accounts(now)
    if not account_ids:
        return 0

    issued = 0
    for account_id in account_ids:
        try:
            invoice = await service.subscriptions.renewal_due(account_id, now)
            if invoice is not None:
                issued += 1
        except Exception as e:
            logger.error(f"Renewal sweep failed for account {account_id}: {e}")

    logger.info(f"Renewal sweep: {len(account_ids)} due, {issued} invoices issued")
    return issued


async def run_stale_renewal_sweep(service: BillingService, now: Optional[datetime] = None) -> int:
    expired = await service.subscriptions.expire_stale_renewals(now)
    if expired:
        logger.warning(f"Stale renewal sweep: {expired} renewal invoices treated as failed")
    return expired


def setup_scheduler(scheduler, service: BillingService, settings: BillingSettings) -> None:
    """Register the billing jobs on an APScheduler AsyncIOScheduler."""

    async def renewal_sweep_job():
        try:
            await run_renewal_sweep(service)
        except Exception as e:
            logger.error(f"Renewal sweep error: {e}")

    async def stale_renewal_sweep_job():
        try:
            await run_stale_renewal_sweep(service)
        except Exception as e:
            logger.error(f"Stale renewal sweep error: {e}")

    scheduler.add_job(
        renewal_sweep_job,
        'interval',
        minutes=settings.renewal_check_interval_minutes,
        id=RENEWAL_SWEEP_JOB_ID,
        replace_existing=True,
        misfire_grace_time=300
    )

    scheduler.add_job(
        stale_renewal_sweep_job,
        'interval',
        hours=1,
        id=STALE_RENEWAL_SWEEP_JOB_ID,
        replace_existing=True,
        misfire_grace_time=300
    )

    logger.info(
        f"Billing scheduler configured: renewal sweep every "
        f"{settings.renewal_check_interval_minutes} minutes, stale sweep hourly"
    )
