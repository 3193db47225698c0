"""
Billing provider protocol.

Defines the contract the entitlement engine expects from the billing
provider (Stripe, etc.), so business logic never touches the SDK directly.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

from providerhub.core.config import settings
from providerhub.core.errors import AppError


@dataclass(frozen=True)
class SubscriptionRecord:
    """One subscription as reported by the billing provider."""
    id: str
    status: str  # active, canceled, past_due, trialing, unpaid, incomplete, ...
    cancel_at_period_end: bool
    current_period_end: Optional[datetime]
    price_id: Optional[str]
    created: int  # unix seconds; used for recency ordering


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    email: Optional[str] = None


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    customer_ref: Optional[str]
    customer_email: Optional[str]
    subscription_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must raise BillingProviderError on connectivity or API
    failures and PortalNotConfiguredError when self-service management is
    not set up on the provider side.
    """

    def list_customers(self, email: str) -> List[CustomerRecord]:
        """Customers registered under a contact email, most relevant first."""
        ...

    def create_customer(self, email: Optional[str], account_id: str) -> CustomerRecord:
        """Create a customer tagged with the internal account id."""
        ...

    def list_subscriptions(self, customer_ref: str) -> List[SubscriptionRecord]:
        """All subscriptions for a customer, including historical ones."""
        ...

    def get_price_amount(self, price_id: str) -> Optional[int]:
        """Unit amount of a price in minor currency units."""
        ...

    def create_checkout_session(
        self,
        customer_ref: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create a subscription checkout session and return its URL."""
        ...

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create a self-service management session and return its URL."""
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify webhook signature and parse the event."""
        ...


class BillingProviderError(AppError):
    """Billing provider unreachable or returned an error."""
    code = "billing_unavailable"
    status_code = 502


class BillingWebhookError(AppError):
    """Webhook signature invalid or payload unparseable."""
    code = "invalid_webhook"
    status_code = 400


class BillingConfigError(AppError):
    """
    Billing is misconfigured (missing price, unconfigured portal).

    Distinct from connectivity failures so callers can show setup guidance
    instead of a retry prompt.
    """
    code = "billing_config_required"
    status_code = 400

    def __init__(self, message: str, *, config_url: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if config_url:
            details["config_url"] = config_url
        super().__init__(message, details=details, **kwargs)
        self.config_url = config_url


class PortalNotConfiguredError(BillingConfigError):
    """The provider's self-service portal has not been configured."""

    def __init__(self, message: str = "Billing portal is not configured"):
        super().__init__(message, config_url=settings.STRIPE_PORTAL_CONFIG_URL)


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503
