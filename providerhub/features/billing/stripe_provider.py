"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import os
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
import stripe

from providerhub.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CustomerRecord,
    PortalNotConfiguredError,
    SubscriptionRecord,
)

SUBSCRIPTION_PAGE_SIZE = 100


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Item lookup that tolerates missing keys on StripeObject and dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _to_datetime(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def list_customers(self, email: str) -> List[CustomerRecord]:
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}")
        return [CustomerRecord(id=c["id"], email=_field(c, "email")) for c in customers["data"]]

    def create_customer(self, email: Optional[str], account_id: str) -> CustomerRecord:
        customer_data: Dict[str, Any] = {"metadata": {"account_id": account_id}}
        if email:
            customer_data["email"] = email
        try:
            customer = stripe.Customer.create(**customer_data)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")
        return CustomerRecord(id=customer["id"], email=email)

    def list_subscriptions(self, customer_ref: str) -> List[SubscriptionRecord]:
        try:
            page = stripe.Subscription.list(
                customer=customer_ref,
                status="all",
                limit=SUBSCRIPTION_PAGE_SIZE,
            )
            return [self._to_record(sub) for sub in page.auto_paging_iter()]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}")

    def get_price_amount(self, price_id: str) -> Optional[int]:
        try:
            price = stripe.Price.retrieve(price_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe price lookup failed: {e}")
        return _field(price, "unit_amount")

    def create_checkout_session(
        self,
        customer_ref: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        try:
            session = stripe.checkout.Session.create(
                customer=customer_ref,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                allow_promotion_codes=True,
                metadata=metadata or {},
                subscription_data={"metadata": metadata or {}},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return session["url"]

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url,
            )
        except stripe.InvalidRequestError as e:
            message = str(e).lower()
            if "configuration" in message or "portal" in message:
                raise PortalNotConfiguredError(
                    "Stripe Customer Portal needs to be configured in the Stripe Dashboard"
                )
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        return session["url"]

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        data = _field(_field(event, "data", {}), "object", {})
        event_type = event["type"]

        customer_email = None
        subscription_id = None
        if event_type == "checkout.session.completed":
            customer_email = _field(data, "customer_email") or _field(
                _field(data, "customer_details"), "email"
            )
            subscription_id = _field(data, "subscription")
        elif event_type.startswith("customer.subscription."):
            subscription_id = _field(data, "id")

        metadata = _field(data, "metadata", {})
        return BillingWebhookResult(
            event_id=event["id"],
            event_type=event_type,
            customer_ref=_field(data, "customer"),
            customer_email=customer_email,
            subscription_id=subscription_id,
            metadata={k: metadata[k] for k in metadata} if metadata else {},
        )

    @staticmethod
    def _to_record(sub: Any) -> SubscriptionRecord:
        items = _field(_field(sub, "items"), "data", [])
        first_item = items[0] if items else None
        # Newer API versions report the period on the item, older ones on the subscription
        period_end = _field(sub, "current_period_end") or _field(first_item, "current_period_end")
        return SubscriptionRecord(
            id=sub["id"],
            status=sub["status"],
            cancel_at_period_end=bool(_field(sub, "cancel_at_period_end", False)),
            current_period_end=_to_datetime(period_end),
            price_id=_field(_field(first_item, "price"), "id"),
            created=int(_field(sub, "created", 0)),
        )
