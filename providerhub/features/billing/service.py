"""
Billing service orchestrator.

Coordinates:
- On-demand reconciliation
- Checkout / self-service portal (CheckoutCoordinator)
- Webhook processing with event-id idempotency
- Billing status for the dashboard

All Stripe-specific code is in stripe_provider.py.
"""
import os
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from providerhub.core.config import settings
from providerhub.core.database import get_db_session, billing_events
from providerhub.core.errors import NotFoundError, ValidationError
from providerhub.features.accounts.service import get_account_email, resolve_account
from providerhub.features.billing.provider import (
    BillingConfigError,
    BillingDisabledError,
    BillingProvider,
    BillingProviderError,
    BillingWebhookResult,
)
from providerhub.features.billing.reconciler import reconcile, resolve_customer_ref
from providerhub.features.billing.stripe_provider import StripeProvider
from providerhub.features.billing.tiers import get_price_for_tier, is_recognized_paid_price
from providerhub.features.entitlements import store
from providerhub.models.entitlement import EntitlementSnapshot, Tier

logger = logging.getLogger("providerhub")

# Any of these on a paid price means the customer already has a subscription
# to manage rather than a new one to buy
MANAGED_STATUSES = frozenset({"active", "trialing", "past_due", "unpaid", "incomplete"})


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not enabled")
    return provider


def reconcile_account(
    account_id: str,
    *,
    force: bool = False,
    provider: Optional[BillingProvider] = None,
) -> EntitlementSnapshot:
    """
    Reconcile an account on demand (login, explicit refresh).

    Raises:
        BillingDisabledError: Stripe not configured
        BillingProviderError: Stripe unreachable
    """
    return reconcile(account_id, _require_provider(provider), force=force)


@dataclass(frozen=True)
class CheckoutResult:
    redirect_url: str
    is_new_checkout: bool


def _success_url() -> str:
    return f"{settings.APP_BASE_URL}/dashboard/billing?checkout=success"


def _cancel_url() -> str:
    return f"{settings.APP_BASE_URL}/dashboard/billing?checkout=canceled"


def _return_url() -> str:
    return f"{settings.APP_BASE_URL}/dashboard/billing"


def _has_recognized_paid_price(price_id: Optional[str], provider: BillingProvider) -> bool:
    if is_recognized_paid_price(price_id):
        return True
    if not price_id:
        return False
    # Unconfigured prices (legacy, dashboard-created) still count when they cost money
    amount = provider.get_price_amount(price_id)
    return bool(amount and amount > 0)


class CheckoutCoordinator:
    """
    Starts a paid subscription, or sends the customer to the self-service
    portal when they already have one.
    """

    def __init__(self, provider: Optional[BillingProvider] = None):
        self.provider = _require_provider(provider)

    def _ensure_customer(self, account_id: str) -> str:
        customer_ref = resolve_customer_ref(account_id, self.provider)
        if customer_ref:
            return customer_ref

        customer = self.provider.create_customer(get_account_email(account_id), account_id)
        store.cache_customer_ref(account_id, customer.id)
        logger.info(
            "[billing] customer created",
            extra={"account_id": account_id, "customer_ref": customer.id},
        )
        return customer.id

    def start_upgrade(self, account_id: str, target_tier: Tier) -> CheckoutResult:
        """
        Raises:
            ValidationError: target_tier is not purchasable
            BillingConfigError: no price configured for target_tier
            BillingProviderError: Stripe unreachable
        """
        target_tier = Tier(target_tier)
        if target_tier == Tier.FREE:
            raise ValidationError("The free tier cannot be purchased")

        price_id = get_price_for_tier(target_tier)
        if not price_id:
            raise BillingConfigError(
                f"No price configured for tier: {target_tier.value}",
                config_url=settings.STRIPE_PRICES_CONFIG_URL,
            )

        customer_ref = self._ensure_customer(account_id)

        for sub in self.provider.list_subscriptions(customer_ref):
            if sub.status in MANAGED_STATUSES and _has_recognized_paid_price(sub.price_id, self.provider):
                url = self.provider.create_portal_session(customer_ref, _return_url())
                logger.info(
                    "[billing] existing subscription, portal redirect",
                    extra={"account_id": account_id, "subscription_status": sub.status},
                )
                return CheckoutResult(redirect_url=url, is_new_checkout=False)

        url = self.provider.create_checkout_session(
            customer_ref=customer_ref,
            price_id=price_id,
            success_url=_success_url(),
            cancel_url=_cancel_url(),
            metadata={"account_id": account_id, "tier": target_tier.value},
        )
        logger.info(
            "[billing] checkout started",
            extra={"account_id": account_id, "tier": target_tier.value},
        )
        return CheckoutResult(redirect_url=url, is_new_checkout=True)


def open_portal(
    account_id: str,
    return_url: Optional[str] = None,
    *,
    provider: Optional[BillingProvider] = None,
) -> str:
    """
    Start billing portal session for customer self-service.

    Raises:
        NotFoundError: account has no billing customer
        PortalNotConfiguredError: portal not set up in the Stripe dashboard
    """
    provider = _require_provider(provider)
    customer_ref = resolve_customer_ref(account_id, provider)
    if not customer_ref:
        raise NotFoundError("No billing customer for this account")
    return provider.create_portal_session(customer_ref, return_url or _return_url())


def _apply_webhook(result: BillingWebhookResult, provider: BillingProvider) -> Optional[str]:
    """Reconcile the account an event refers to. Returns the account id, if any."""
    account_id = None
    if result.event_type == "checkout.session.completed":
        account_id = result.metadata.get("account_id")
        if account_id and result.customer_ref:
            store.cache_customer_ref(account_id, result.customer_ref)
    elif result.event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        if result.customer_ref:
            account_id = store.find_account_by_customer_ref(result.customer_ref)

    if not account_id:
        logger.info(
            "[billing] webhook ignored, no account",
            extra={"event_type": result.event_type, "customer_ref": result.customer_ref},
        )
        return None

    reconcile(account_id, provider, force=True)
    return account_id


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    provider: Optional[BillingProvider] = None,
) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already recorded)
    3. Reconcile the affected account
    4. Mark as processed

    Raises:
        BillingWebhookError: If signature invalid
        BillingProviderError: If reconciliation fails (Stripe retries the event)
    """
    provider = _require_provider(provider)
    result = provider.parse_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                billing_events.c.stripe_event_id == result.event_id
            )
        ).first()
        if existing and existing.processed:
            logger.info("[billing] duplicate webhook skipped", extra={"event_type": result.event_type})
            return result

    if not existing:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
        except IntegrityError:
            # Another delivery of the same event got there first
            return result

    try:
        _apply_webhook(result, provider)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e)[:1000])
            )
        raise

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == result.event_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        )
    return result


def get_billing_status(account_id: str) -> Dict[str, Any]:
    """
    Stored entitlement state, without contacting Stripe.

    Returns:
        {
            "enabled": bool,
            "account_type": str,
            "subscribed": bool,
            "tier": str,
            "period_end": datetime | None,
            "last_reconciled_at": datetime | None
        }
    """
    account = resolve_account(account_id)
    snapshot = store.get_snapshot(account_id) or EntitlementSnapshot(account_id=account_id)
    return {
        "enabled": billing_enabled(),
        "account_type": type(account).__name__.replace("Account", "").lower(),
        "subscribed": snapshot.subscribed,
        "tier": snapshot.effective_tier.value,
        "period_end": snapshot.period_end,
        "last_reconciled_at": snapshot.last_reconciled_at,
    }
