"""
Token Billing Data Models

Pydantic models for ledger, subscription and invoice operations.
These define the structure of documents stored by the billing store
and the payloads exchanged with the dashboard API.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class TransactionKind(str, Enum):
    EARNED = "earned"
    SPENT = "spent"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_RENEWAL = "pending_renewal"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class InvoiceStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not InvoiceStatus.PENDING


class InvoiceKind(str, Enum):
    SUBSCRIPTION = "subscription"
    BUNDLE = "bundle"


class SettlementOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"


# ==================== LEDGER MODELS ====================

class TokenTransaction(BaseModel):
    """Immutable ledger entry. Ordered by sequence_no within an account."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"TXN-{uuid.uuid4().hex[:12].upper()}")
    account_id: str
    sequence_no: int
    timestamp: datetime
    amount: int
    kind: TransactionKind
    idempotency_key: str
    resulting_available: int
    category: str = "general"
    description: Optional[str] = None
    reference_id: Optional[str] = None

    @property
    def signed_amount(self) -> int:
        return self.amount if self.kind is TransactionKind.EARNED else -self.amount


class TokenBalance(BaseModel):
    available: int = 0
    total: int = 0
    spent: int = 0


class BalanceSnapshot(BaseModel):
    """Balance folded from the ledger up to and including sequence_no."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    sequence_no: int = 0
    available: int = 0
    total: int = 0
    spent: int = 0
    last_timestamp: Optional[datetime] = None

    def apply(self, txn: TokenTransaction) -> "BalanceSnapshot":
        if txn.kind is TransactionKind.EARNED:
            total, spent = self.total + txn.amount, self.spent
        else:
            total, spent = self.total, self.spent + txn.amount
        return BalanceSnapshot(
            account_id=self.account_id,
            sequence_no=txn.sequence_no,
            available=total - spent,
            total=total,
            spent=spent,
            last_timestamp=txn.timestamp,
        )

    @property
    def balance(self) -> TokenBalance:
        return TokenBalance(available=self.available, total=self.total, spent=self.spent)


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_transactions: int
    has_next: bool
    has_prev: bool


class TransactionPage(BaseModel):
    transactions: List[TokenTransaction]
    pagination: Pagination


# ==================== CATALOGUE MODELS ====================

class SubscriptionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    price_monthly: float
    price_annual: float
    features: List[str] = Field(default_factory=list)
    tokens_per_cycle: int = 0

    def price_for(self, cycle: BillingCycle) -> float:
        return self.price_annual if cycle is BillingCycle.ANNUAL else self.price_monthly


class TokenBundle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    token_count: int
    price: float
    popular: bool = False


# ==================== SUBSCRIPTION MODELS ====================

class SubscriptionState(BaseModel):
    """Per-account subscription state. Mutated only by SubscriptionManager."""
    account_id: str
    current_plan_id: str
    billing_cycle: BillingCycle
    next_billing_date: datetime
    # Day of month the billing schedule is anchored to
    anchor_day: Optional[int] = None
    auto_renew: bool = True
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cycle_number: int = 1
    consecutive_failures: int = 0
    pending_invoice_id: Optional[str] = None
    renewal_started_at: Optional[datetime] = None
    retry_after: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ==================== INVOICE MODELS ====================

class SubscriptionInvoice(BaseModel):
    """Invoice for a subscription renewal or a token bundle purchase."""
    id: str = Field(default_factory=lambda: f"INV-{uuid.uuid4().hex[:12].upper()}")
    account_id: str
    date: datetime
    description: str
    amount: float
    status: InvoiceStatus = InvoiceStatus.PENDING
    kind: InvoiceKind
    correlation_id: str
    token_count: Optional[int] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    settled_at: Optional[datetime] = None


class SettlementResult(BaseModel):
    invoice: SubscriptionInvoice
    already_settled: bool = False


# ==================== ANALYTICS MODELS ====================

class UsageBreakdownItem(BaseModel):
    category: str
    tokens_used: int
    unused: int


class TimelineBucket(BaseModel):
    name: str
    earned: int = 0
    spent: int = 0


class TokenStats(BaseModel):
    current_balance: int
    total_purchased: int
    monthly_usage: int
    usage_by_category: Dict[str, int]
    recent_transactions: List[TokenTransaction]


# ==================== REQUEST MODELS ====================

class SpendRequest(BaseModel):
    amount: int = Field(..., description="Tokens to spend")
    category: str = Field("general", description="Usage category, e.g. ai_assistant")
    description: Optional[str] = None
    idempotency_key: Optional[str] = None


class PurchaseRequest(BaseModel):
    bundle_id: str = Field(..., description="Token bundle ID, e.g. bundle-500")
    idempotency_key: Optional[str] = None


class SubscriptionChangeRequest(BaseModel):
    plan_id: str
    billing_cycle: str = "monthly"
    idempotency_key: Optional[str] = None


class AutoRenewRequest(BaseModel):
    enabled: Optional[bool] = None
    idempotency_key: Optional[str] = None


class SettleRequest(BaseModel):
    outcome: str = Field(..., description="paid or failed")


class AdminCreditRequest(BaseModel):
    account_id: str
    tokens: int = Field(..., ge=1)
    reason: str = "admin_grant"
    idempotency_key: Optional[str] = None
