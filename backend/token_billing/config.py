"""
Token Billing Configuration and Constants

Subscription plans, token bundles, billing cycles and runtime settings
are defined here. Prices are in USD, grants in tokens.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


# ==================== SUBSCRIPTION PLANS (USD) ====================
SUBSCRIPTION_PLANS = {
    "free": {
        "name": "Free Trial",
        "description": "14 days free Trial",
        "price_monthly": 0,
        "price_annual": 0,
        "tokens_per_cycle": 0,
        "features": [
            "Limited access to cases",
            "Basic document storage",
            "Email support",
        ],
    },
    "advanced": {
        "name": "Advanced",
        "description": "Best for 100+ team size",
        "price_monthly": 425,
        "price_annual": 4250,
        "tokens_per_cycle": 500,
        "features": [
            "Unlimited cases",
            "Advanced document management",
            "Priority support",
            "AI features (limited)",
        ],
    },
    "enterprise": {
        "name": "Enterprise",
        "description": "Best value for 1000+ team",
        "price_monthly": 799,
        "price_annual": 7990,
        "tokens_per_cycle": 2000,
        "features": [
            "Everything in Advanced",
            "Unlimited storage",
            "24/7 support",
            "Advanced analytics",
            "Custom integrations",
        ],
    },
    "custom": {
        "name": "Custom",
        "description": "Request a custom license",
        "price_monthly": 999,
        "price_annual": 9990,
        "tokens_per_cycle": 5000,
        "features": [
            "Custom solution",
            "Dedicated account manager",
            "On-premise deployment options",
            "Custom training",
        ],
    },
}

# ==================== TOKEN BUNDLES (USD) ====================
TOKEN_BUNDLES = {
    "bundle-100": {"token_count": 100, "price": 49, "popular": False},
    "bundle-500": {"token_count": 500, "price": 199, "popular": True},
    "bundle-1000": {"token_count": 1000, "price": 349, "popular": False},
    "bundle-5000": {"token_count": 5000, "price": 1499, "popular": False},
}

# ==================== BILLING CYCLES ====================
# Cycle length in calendar months
BILLING_CYCLE_MONTHS = {
    "monthly": 1,
    "annual": 12,
}

# ==================== LEDGER CATEGORIES ====================
DEFAULT_CATEGORY = "general"
BUNDLE_PURCHASE_CATEGORY = "bundle_purchase"
SUBSCRIPTION_GRANT_CATEGORY = "subscription_grant"
ADMIN_GRANT_CATEGORY = "admin_grant"

# ==================== ANALYTICS ====================
# Rolling windows ending now, in days (None = all history)
ANALYTICS_PERIODS = {
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
    "all": None,
}
DEFAULT_ANALYTICS_PERIOD = "month"
RECENT_TRANSACTIONS_LIMIT = 10

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "VALIDATION_ERROR": "The request is malformed.",
    "INSUFFICIENT_BALANCE": "Not enough tokens. Please purchase a token bundle.",
    "NOT_FOUND": "The requested resource was not found.",
    "INVALID_STATE_TRANSITION": "This action is not allowed in the current subscription state.",
    "CONCURRENCY_CONFLICT": "Another request changed this account. Please try again.",
    "ANALYTICS_UNAVAILABLE": "Analytics are temporarily unavailable.",
}


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


@dataclass
class BillingSettings:
    """Runtime settings, read from the environment."""
    store_backend: str = "memory"
    mongo_url: Optional[str] = None
    db_name: Optional[str] = None
    ledger_max_retries: int = 3
    ledger_retry_backoff_seconds: float = 0.05
    ledger_page_size: int = 100
    renewal_check_interval_minutes: int = 15
    renewal_grace_period_hours: int = 72
    past_due_retry_hours: int = 24
    webhook_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BillingSettings":
        return cls(
            store_backend=os.environ.get("BILLING_STORE", "memory").lower(),
            mongo_url=os.environ.get("MONGO_URL"),
            db_name=os.environ.get("DB_NAME"),
            ledger_max_retries=_env_int("LEDGER_MAX_RETRIES", 3),
            ledger_retry_backoff_seconds=_env_float("LEDGER_RETRY_BACKOFF_SECONDS", 0.05),
            ledger_page_size=_env_int("LEDGER_PAGE_SIZE", 100),
            renewal_check_interval_minutes=_env_int("RENEWAL_CHECK_INTERVAL_MINUTES", 15),
            renewal_grace_period_hours=_env_int("RENEWAL_GRACE_PERIOD_HOURS", 72),
            past_due_retry_hours=_env_int("PAST_DUE_RETRY_HOURS", 24),
            webhook_secret=os.environ.get("BILLING_WEBHOOK_SECRET") or None,
        )
