"""
Token Billing Module
Token accounting and subscription billing core for the practice dashboard

This module provides:
- Append-only token ledger (earned / spent) with idempotent appends
- Balance snapshots folded from the ledger
- Usage analytics (category breakdown, timelines, stats)
- Subscription plan and billing-cycle state machine
- Invoices for renewals and token bundle purchases

Collections used (MongoDB store):
- token_ledger: Immutable transaction log
- subscription_states: One subscription state per account
- billing_invoices: Renewal and bundle invoices
- idempotent_responses: Stored results for replayed requests
- billing_meta: Init version stamp
"""

__version__ = "1.0.0"
