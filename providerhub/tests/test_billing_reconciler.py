"""
Billing reconciliation: customer resolution, subscription selection, tier
resolution, freshness and failure semantics.
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from providerhub.core.database import get_db_session, providers, users
from providerhub.features.billing.provider import BillingProviderError
from providerhub.features.billing.reconciler import reconcile, select_subscription
from providerhub.features.entitlements import store
from providerhub.models.entitlement import Tier
from providerhub.tests.mocks import PERIOD_END, FakeBillingProvider, sub
from providerhub.tests.seed import seed_provider, seed_user

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def alice(db):
    seed_provider("alice", "alice@example.com")
    return "alice"


def test_no_billing_history_writes_unsubscribed_snapshot(alice):
    provider = FakeBillingProvider()

    snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.subscribed is False
    assert snapshot.tier is None
    assert snapshot.period_end is None
    assert snapshot.billing_customer_ref is None
    stored = store.get_snapshot(alice)
    assert stored is not None
    assert stored.subscribed is False
    assert stored.last_reconciled_at == NOW


def test_account_without_email_has_no_billing_history(db):
    seed_user("ghost")
    provider = FakeBillingProvider(customers={"ghost@example.com": ["cus_ghost"]})
    with get_db_session() as session:
        session.execute(users.update().where(users.c.user_id == "ghost").values(email=None))

    snapshot = reconcile("ghost", provider, now=NOW)

    assert snapshot.subscribed is False
    assert snapshot.billing_customer_ref is None


def test_customer_found_by_email_is_cached(alice):
    provider = FakeBillingProvider(customers={"alice@example.com": ["cus_first", "cus_second"]})

    snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.billing_customer_ref == "cus_first"
    assert store.get_cached_customer_ref(alice) == "cus_first"

    # Later reconciliations use the cached ref, not the email lookup
    provider.customers = {}
    provider.subscriptions = {"cus_first": [sub("sub_1", "active", 100)]}
    again = reconcile(alice, provider, force=True, now=NOW + timedelta(minutes=5))
    assert again.subscribed is True
    assert again.billing_customer_ref == "cus_first"


def test_most_recent_subscription_wins_over_status(alice):
    """An older active subscription loses to a newer canceled one."""
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [
            sub("sub_old", "active", created=100),
            sub("sub_new", "canceled", created=200),
        ]},
    )

    snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.subscribed is False
    assert snapshot.tier is None
    assert snapshot.billing_customer_ref == "cus_a"


def test_active_subscription_sets_tier_and_period(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [
            sub("sub_old", "canceled", created=100),
            sub("sub_new", "active", created=200, price_id="price_pro"),
        ]},
    )

    snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.subscribed is True
    assert snapshot.tier == Tier.PRO
    assert snapshot.period_end == PERIOD_END


def test_missing_period_end_falls_back_to_now_with_warning(alice, caplog):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100, period_end=None)]},
    )

    with caplog.at_level(logging.WARNING, logger="providerhub"):
        snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.subscribed is True
    assert snapshot.period_end == NOW
    assert any("no period end" in r.getMessage() for r in caplog.records)


def test_past_due_reads_as_unsubscribed(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "past_due", created=100)]},
    )

    assert reconcile(alice, provider, now=NOW).subscribed is False


def test_active_with_cancel_at_period_end_is_still_subscribed(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100, cancel_at_period_end=True)]},
    )

    snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.subscribed is True
    assert snapshot.tier == Tier.STARTER


def test_statuses_outside_the_candidates_are_ignored():
    selected = select_subscription([
        sub("sub_trial", "trialing", created=300),
        sub("sub_incomplete", "incomplete", created=250),
        sub("sub_active", "active", created=200),
    ])
    assert selected.id == "sub_active"
    assert select_subscription([sub("sub_trial", "trialing", created=1)]) is None


@pytest.mark.parametrize("amount,expected", [
    (1999, Tier.STARTER),
    (2999, Tier.STARTER),
    (5000, Tier.STARTER),
    (7900, Tier.PRO),
    (19900, Tier.PRO),
])
def test_unrecognized_price_resolves_by_amount(alice, caplog, amount, expected):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100, price_id="price_legacy")]},
        price_amounts={"price_legacy": amount},
    )

    with caplog.at_level(logging.WARNING, logger="providerhub"):
        snapshot = reconcile(alice, provider, now=NOW)

    assert snapshot.tier == expected
    assert any("unrecognized price" in r.getMessage() for r in caplog.records)


def test_reconcile_is_idempotent(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100)]},
    )

    first = reconcile(alice, provider, now=NOW)
    second = reconcile(alice, provider, force=True, now=NOW + timedelta(seconds=5))

    assert first.same_state(second)
    assert first.last_reconciled_at != second.last_reconciled_at
    assert store.get_snapshot(alice).same_state(first)


def test_fresh_snapshot_is_returned_without_calling_provider(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100)]},
    )
    reconcile(alice, provider, now=NOW)
    assert provider.subscription_calls == 1

    provider.subscriptions["cus_a"] = [sub("sub_1", "canceled", created=100)]

    cached = reconcile(alice, provider, now=NOW + timedelta(seconds=30))
    assert cached.subscribed is True
    assert provider.subscription_calls == 1

    forced = reconcile(alice, provider, force=True, now=NOW + timedelta(seconds=30))
    assert forced.subscribed is False
    assert provider.subscription_calls == 2


def test_stale_snapshot_is_refreshed(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100)]},
    )
    reconcile(alice, provider, now=NOW)
    provider.subscriptions["cus_a"] = [sub("sub_1", "canceled", created=100)]

    refreshed = reconcile(alice, provider, now=NOW + timedelta(seconds=61))

    assert refreshed.subscribed is False
    assert provider.subscription_calls == 2


def test_provider_error_leaves_snapshot_untouched(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100)]},
    )
    before = reconcile(alice, provider, now=NOW)

    provider.fail = True
    with pytest.raises(BillingProviderError):
        reconcile(alice, provider, force=True, now=NOW + timedelta(minutes=10))

    after = store.get_snapshot(alice)
    assert after == before


def test_snapshot_is_mirrored_onto_provider_profile(alice):
    provider = FakeBillingProvider(
        customers={"alice@example.com": ["cus_a"]},
        subscriptions={"cus_a": [sub("sub_1", "active", created=100, price_id="price_pro")]},
    )
    reconcile(alice, provider, now=NOW)

    with get_db_session() as session:
        row = session.execute(select(providers).where(providers.c.user_id == alice)).first()
    assert row.subscription_tier == "pro"
    assert row.stripe_customer_id == "cus_a"

    provider.subscriptions["cus_a"] = []
    reconcile(alice, provider, force=True, now=NOW + timedelta(minutes=1))
    with get_db_session() as session:
        row = session.execute(select(providers).where(providers.c.user_id == alice)).first()
    assert row.subscription_tier == "free"
    assert row.subscription_end_date is None
