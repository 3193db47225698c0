"""
Billing reconciliation.

Pulls the authoritative subscription state for one account from the billing
provider and writes a normalized EntitlementSnapshot. This is the only
writer of entitlement_snapshots; the webhook path calls reconcile() with
force=True.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from providerhub.core.config import settings
from providerhub.features.accounts.service import get_account_email
from providerhub.features.billing.provider import BillingProvider, SubscriptionRecord
from providerhub.features.billing.tiers import resolve_tier
from providerhub.features.entitlements import store
from providerhub.models.entitlement import EntitlementSnapshot

logger = logging.getLogger("providerhub")

# Statuses that compete for "most recent subscription"
CANDIDATE_STATUSES = frozenset({"active", "canceled", "past_due"})


def resolve_customer_ref(account_id: str, provider: BillingProvider) -> Optional[str]:
    """
    Cached customer ref first, then a lookup by contact email.

    A ref found by email is cached immediately so later calls skip the lookup.
    """
    cached = store.get_cached_customer_ref(account_id)
    if cached:
        return cached

    email = get_account_email(account_id)
    if not email:
        return None

    customers = provider.list_customers(email)
    if not customers:
        return None

    customer_ref = customers[0].id
    store.cache_customer_ref(account_id, customer_ref)
    logger.info(
        "[billing] customer ref resolved by email",
        extra={"account_id": account_id, "customer_ref": customer_ref},
    )
    return customer_ref


def select_subscription(subscriptions: List[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
    """Most recently created subscription among the candidate statuses."""
    candidates = [s for s in subscriptions if s.status in CANDIDATE_STATUSES]
    if not candidates:
        return None
    return max(candidates, key=lambda s: s.created)


def _is_fresh(snapshot: Optional[EntitlementSnapshot], now: datetime, min_interval: float) -> bool:
    if snapshot is None or snapshot.last_reconciled_at is None:
        return False
    return now - snapshot.last_reconciled_at < timedelta(seconds=min_interval)


def reconcile(
    account_id: str,
    provider: BillingProvider,
    *,
    force: bool = False,
    min_interval: Optional[float] = None,
    now: Optional[datetime] = None,
) -> EntitlementSnapshot:
    """
    Reconcile one account's entitlement snapshot with the billing provider.

    Args:
        account_id: Internal account (user) id
        provider: Billing provider to query
        force: Skip the freshness check (webhooks, explicit refresh)
        min_interval: Override RECONCILE_MIN_INTERVAL_SECONDS
        now: Injected clock for tests

    Returns:
        The snapshot now stored for the account

    Raises:
        BillingProviderError: provider unreachable; the stored snapshot is
            left as it was
    """
    now = now or datetime.now(timezone.utc)
    interval = settings.RECONCILE_MIN_INTERVAL_SECONDS if min_interval is None else min_interval

    if not force:
        existing = store.get_snapshot(account_id)
        if _is_fresh(existing, now, interval):
            return existing

    customer_ref = resolve_customer_ref(account_id, provider)
    if not customer_ref:
        return store.save_snapshot(
            EntitlementSnapshot(account_id=account_id, last_reconciled_at=now)
        )

    selected = select_subscription(provider.list_subscriptions(customer_ref))

    if selected is not None and selected.status == "active":
        tier = resolve_tier(selected.price_id, provider.get_price_amount, account_id=account_id)
        period_end = selected.current_period_end
        if period_end is None:
            # subscribed snapshots require a period_end
            period_end = now
            logger.warning(
                "[billing] active subscription has no period end, using reconcile time",
                extra={"account_id": account_id, "subscription_id": selected.id},
            )
        snapshot = EntitlementSnapshot(
            account_id=account_id,
            billing_customer_ref=customer_ref,
            subscribed=True,
            tier=tier,
            period_end=period_end,
            last_reconciled_at=now,
        )
    else:
        # canceled and past_due both read as unsubscribed, whatever
        # cancel_at_period_end says
        snapshot = EntitlementSnapshot(
            account_id=account_id,
            billing_customer_ref=customer_ref,
            last_reconciled_at=now,
        )

    store.save_snapshot(snapshot)
    logger.info(
        "[billing] reconciled",
        extra={
            "account_id": account_id,
            "subscribed": snapshot.subscribed,
            "tier": snapshot.tier.value if snapshot.tier else None,
            "subscription_status": selected.status if selected else None,
        },
    )
    return snapshot
