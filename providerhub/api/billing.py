"""
Billing API routes.

- POST /api/billing/reconcile: Refresh the entitlement snapshot from Stripe
- GET  /api/billing/status: Stored entitlement state
- POST /api/billing/checkout: Checkout session, or portal if already subscribed
- POST /api/billing/portal: Self-service portal session
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel

from providerhub.core.auth import get_current_user_id
from providerhub.features.billing.service import (
    CheckoutCoordinator,
    get_billing_status,
    open_portal,
    process_webhook_event,
    reconcile_account,
)
from providerhub.models.entitlement import Tier


router = APIRouter(prefix="/billing", tags=["billing"])


class ReconcileRequest(BaseModel):
    force: bool = False


class SnapshotResponse(BaseModel):
    account_id: str
    subscribed: bool
    tier: Optional[str]
    period_end: Optional[datetime]
    last_reconciled_at: Optional[datetime]


class CheckoutRequest(BaseModel):
    tier: Tier


class CheckoutResponse(BaseModel):
    url: str
    is_new_checkout: bool


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class BillingStatusResponse(BaseModel):
    enabled: bool
    account_type: str
    subscribed: bool
    tier: str
    period_end: Optional[datetime]
    last_reconciled_at: Optional[datetime]


@router.post("/reconcile", response_model=SnapshotResponse)
def reconcile(request: Optional[ReconcileRequest] = None, user_id: str = Depends(get_current_user_id)):
    """
    Reconcile the caller's entitlements with Stripe.

    Within RECONCILE_MIN_INTERVAL_SECONDS of the last reconciliation the
    stored snapshot is returned unless force is set.

    Errors:
        502: Stripe unreachable (snapshot unchanged)
        503: Billing disabled
    """
    snapshot = reconcile_account(user_id, force=bool(request and request.force))
    return SnapshotResponse(
        account_id=snapshot.account_id,
        subscribed=snapshot.subscribed,
        tier=snapshot.tier.value if snapshot.tier else None,
        period_end=snapshot.period_end,
        last_reconciled_at=snapshot.last_reconciled_at,
    )


@router.get("/status", response_model=BillingStatusResponse)
def get_status(user_id: str = Depends(get_current_user_id)):
    """Stored entitlement state; never calls Stripe."""
    return get_billing_status(user_id)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(request: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Start an upgrade.

    Returns a checkout URL (is_new_checkout=true), or a portal URL when the
    caller already has a paid subscription to manage.

    Errors:
        400: free tier requested, or no price configured for the tier
        502: Stripe unreachable
        503: Billing disabled
    """
    result = CheckoutCoordinator().start_upgrade(user_id, request.tier)
    return {"url": result.redirect_url, "is_new_checkout": result.is_new_checkout}


@router.post("/portal", response_model=PortalResponse)
def create_portal(request: Optional[PortalRequest] = None, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe billing portal session.

    Errors:
        400: Portal not configured (payload carries config_url)
        404: No billing customer for the caller
        503: Billing disabled
    """
    url = open_portal(user_id, request.return_url if request else None)
    return {"url": url}


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature with STRIPE_WEBHOOK_SECRET; events are deduplicated
    by stripe_event_id (billing_events table).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    result = await run_in_threadpool(process_webhook_event, headers, body)
    return {"received": True, "event_id": result.event_id}
