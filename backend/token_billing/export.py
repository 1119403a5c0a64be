"""
CSV exports for the token history and the invoice history.

Rows are produced one at a time from the ledger query so an export of a long
history never holds more than one page in memory. Output is UTF-8 with a
header row; dates are ISO 8601 in UTC.
"""

import csv
import io
from typing import AsyncIterator, Iterable, List

from .ledger import TransactionQuery
from .models import SubscriptionInvoice

TRANSACTION_COLUMNS = ["date", "type", "amount", "accountId", "resultingBalance"]
INVOICE_COLUMNS = ["id", "date", "description", "amount", "status"]


def _csv_line(values: Iterable) -> str:
    buffer = io.StringIO()
    csv.writer(buffer).writerow(values)
    return buffer.getvalue()


async def transactions_csv(query: TransactionQuery) -> AsyncIterator[str]:
    """Stream the ledger query (newest first) as CSV lines."""
    yield _csv_line(TRANSACTION_COLUMNS)
    async for txn in query:
        yield _csv_line([
            txn.timestamp.isoformat(),
            txn.kind.value,
            txn.amount,
            txn.account_id,
            txn.resulting_available,
        ])


def invoices_csv(invoices: List[SubscriptionInvoice]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(INVOICE_COLUMNS)
    for invoice in invoices:
        writer.writerow([
            invoice.id,
            invoice.date.isoformat(),
            invoice.description,
            f"{invoice.amount:.2f}",
            invoice.status.value,
        ])
    return buffer.getvalue()


def export_filename(prefix: str, account_id: str) -> str:
    safe = "".join(ch for ch in account_id if ch.isalnum() or ch in "-_") or "account"
    return f"{prefix}-{safe}.csv"
