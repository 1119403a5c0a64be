"""
Token Billing API Routes

Endpoints (mounted under /api):
- GET  /tokens/balance - Current {available, total, spent}
- GET  /tokens/transactions - Paged history, newest first
- GET  /tokens/transactions/export - CSV download of the full history
- GET  /tokens/analytics - Usage breakdown by category
- GET  /tokens/analytics/timeline - Earned/spent buckets
- GET  /tokens/stats - Token statistics
- GET  /tokens/overview - Balance, recent activity and analytics
- GET  /tokens/bundles - Bundle catalogue
- POST /tokens/spend - Spend tokens
- POST /tokens/purchase - Create a bundle invoice
- GET  /subscription - Current subscription state
- GET  /subscription/plans - Plan catalogue
- POST /subscription - Subscribe or change plan
- POST /subscription/auto-renew - Toggle auto-renew
- GET  /subscription/history - Invoices, newest first
- GET  /subscription/history/export - CSV download of invoices
- GET  /invoices/{id} - One invoice owned by the caller
- POST /invoices/{id}/settle - Payment processor callback
- POST /admin/credit - Admin token grant

Mutating endpoints take an idempotency key from the Idempotency-Key header
or the idempotency_key body field; a fresh key is generated when neither is
given.
"""

import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .auth import AccountRef, get_admin_account, get_current_account
from .errors import (
    AnalyticsUnavailable,
    BillingError,
    ConcurrencyConflict,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from .export import export_filename, invoices_csv
from .models import (
    AdminCreditRequest,
    AutoRenewRequest,
    PurchaseRequest,
    SettleRequest,
    SpendRequest,
    SubscriptionChangeRequest,
)
from .plans import list_bundles, list_plans
from .service import BillingService

logger = logging.getLogger(__name__)

billing_router = APIRouter(tags=["Token Billing"])

ERROR_STATUS = {
    ValidationError: 400,
    InsufficientBalance: 402,
    NotFound: 404,
    InvalidStateTransition: 409,
    ConcurrencyConflict: 409,
    AnalyticsUnavailable: 503,
}


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map billing errors to HTTP responses. Register on the app for BillingError."""
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error(f"Unhandled billing error on {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


def get_billing_service(request: Request) -> BillingService:
    return request.app.state.billing


def resolve_idempotency_key(header_key: Optional[str], body_key: Optional[str] = None) -> str:
    return header_key or body_key or str(uuid.uuid4())


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


# ==================== TOKEN ENDPOINTS ====================

@billing_router.get("/tokens/balance")
async def get_balance(
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    return await service.balances.get_balance(account.account_id)


@billing_router.get("/tokens/transactions")
async def get_transactions(
    since: Optional[datetime] = None,
    kind: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    """
    Get token transaction history, newest first.

    Filter by kind (earned / spent) and a since timestamp.
    """
    return await service.ledger.page(
        account.account_id,
        page=page,
        limit=limit,
        kind=kind,
        since=_as_utc(since)
    )


@billing_router.get("/tokens/transactions/export")
async def export_transactions(
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    """Download the full token history as CSV."""
    filename = export_filename("token-transactions", account.account_id)
    return StreamingResponse(
        service.export_transactions(account.account_id),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@billing_router.get("/tokens/analytics")
async def get_analytics(
    period: str = "month",
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    breakdown = await service.analytics.usage_breakdown(account.account_id, period)
    return {"period": period, "breakdown": breakdown}


@billing_router.get("/tokens/analytics/timeline")
async def get_analytics_timeline(
    view: str = "weekly",
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    buckets = await service.analytics.usage_timeline(account.account_id, view)
    return {"view": view, "buckets": buckets}


@billing_router.get("/tokens/stats")
async def get_token_stats(
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    return await service.analytics.token_stats(account.account_id)


@billing_router.get("/tokens/overview")
async def get_overview(
    period: Optional[str] = None,
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    """Balance, recent transactions and usage analytics (null if unavailable)."""
    return await service.overview(account.account_id, period)


@billing_router.get("/tokens/bundles")
async def get_bundles():
    """Get available token bundles (public endpoint)"""
    return {"bundles": list_bundles()}


@billing_router.post("/tokens/spend")
async def spend_tokens(
    request: SpendRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    return await service.spend_tokens(
        account.account_id,
        request.amount,
        resolve_idempotency_key(idempotency_key, request.idempotency_key),
        category=request.category,
        description=request.description
    )


@billing_router.post("/tokens/purchase")
async def purchase_bundle(
    request: PurchaseRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    """
    Create a Pending invoice for a token bundle.

    Tokens are credited when the payment processor settles the invoice as paid.
    """
    return await service.purchase_bundle(
        account.account_id,
        request.bundle_id,
        resolve_idempotency_key(idempotency_key, request.idempotency_key)
    )


# ==================== SUBSCRIPTION ENDPOINTS ====================

@billing_router.get("/subscription")
async def get_subscription(
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    return await service.subscriptions.get_state(account.account_id)


@billing_router.get("/subscription/plans")
async def get_plans():
    """Get available subscription plans (public endpoint)"""
    return {"plans": list_plans()}


@billing_router.post("/subscription")
async def change_subscription(
    request: SubscriptionChangeRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    return await service.change_subscription(
        account.account_id,
        request.plan_id,
        request.billing_cycle,
        resolve_idempotency_key(idempotency_key, request.idempotency_key)
    )


@billing_router.post("/subscription/auto-renew")
async def toggle_auto_renew(
    request: AutoRenewRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    """Set auto-renew, or flip it when enabled is omitted."""
    return await service.set_auto_renew(
        account.account_id,
        request.enabled,
        resolve_idempotency_key(idempotency_key, request.idempotency_key)
    )


@billing_router.get("/subscription/history")
async def get_subscription_history(
    limit: int = Query(100, ge=1, le=500),
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    invoices = await service.invoices.history(account.account_id, limit)
    return {"invoices": invoices, "count": len(invoices)}


@billing_router.get("/subscription/history/export")
async def export_subscription_history(
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    invoices = await service.invoices.history(account.account_id, limit=10000)
    filename = export_filename("subscription-history", account.account_id)
    return Response(
        content=invoices_csv(invoices),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


# ==================== INVOICE ENDPOINTS ====================

@billing_router.get("/invoices/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    account: AccountRef = Depends(get_current_account),
    service: BillingService = Depends(get_billing_service)
):
    return await service.invoices.get(invoice_id, account_id=account.account_id)


@billing_router.post("/invoices/{invoice_id}/settle")
async def settle_invoice(
    invoice_id: str,
    request: SettleRequest,
    webhook_secret: Optional[str] = Header(None, alias="X-Billing-Webhook-Secret"),
    service: BillingService = Depends(get_billing_service)
):
    """
    Payment processor callback.

    Safe to deliver more than once: a settled invoice is returned unchanged
    with already_settled=true.
    """
    expected = service.settings.webhook_secret
    if expected:
        if not webhook_secret or not hmac.compare_digest(webhook_secret, expected):
            logger.warning(f"Rejected settlement callback for {invoice_id}: bad webhook secret")
            raise HTTPException(status_code=401, detail="Invalid webhook secret")
    else:
        logger.warning("BILLING_WEBHOOK_SECRET not configured; settlement callback is unauthenticated")

    return await service.settle_invoice(invoice_id, request.outcome)


# ==================== ADMIN ENDPOINTS ====================

@billing_router.post("/admin/credit")
async def admin_credit_tokens(
    request: AdminCreditRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    admin: AccountRef = Depends(get_admin_account),
    service: BillingService = Depends(get_billing_service)
):
    """Admin: grant tokens to an account"""
    txn = await service.grant_tokens(
        request.account_id,
        request.tokens,
        resolve_idempotency_key(idempotency_key, request.idempotency_key),
        reason=request.reason
    )
    logger.info(f"Admin {admin.account_id} credited {request.tokens} tokens to {request.account_id}")
    return txn
