"""
providerhub/features/entitlements/store.py

EntitlementStore: persisted account -> EntitlementSnapshot mapping.

Writes are atomic upserts keyed by account_id, so a webhook-driven and an
on-demand reconciliation racing on the same account resolve to last write
wins without read-modify-write windows.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update

from providerhub.core.database import (
    get_db_session,
    upsert,
    entitlement_snapshots,
    providers,
)
from providerhub.models.entitlement import EntitlementSnapshot, Tier


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on round-trip
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_snapshot(row) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        account_id=row.account_id,
        billing_customer_ref=row.billing_customer_ref,
        subscribed=bool(row.subscribed),
        tier=Tier(row.tier) if row.tier else None,
        period_end=_as_utc(row.period_end),
        last_reconciled_at=_as_utc(row.last_reconciled_at),
    )


def get_snapshot(account_id: str) -> Optional[EntitlementSnapshot]:
    with get_db_session() as session:
        row = session.execute(
            select(entitlement_snapshots).where(entitlement_snapshots.c.account_id == account_id)
        ).first()
    return _row_to_snapshot(row) if row else None


def get_cached_customer_ref(account_id: str) -> Optional[str]:
    with get_db_session() as session:
        return session.execute(
            select(entitlement_snapshots.c.billing_customer_ref)
            .where(entitlement_snapshots.c.account_id == account_id)
        ).scalar_one_or_none()


def find_account_by_customer_ref(customer_ref: str) -> Optional[str]:
    with get_db_session() as session:
        return session.execute(
            select(entitlement_snapshots.c.account_id)
            .where(entitlement_snapshots.c.billing_customer_ref == customer_ref)
            .order_by(entitlement_snapshots.c.last_reconciled_at.desc())
            .limit(1)
        ).scalar_one_or_none()


def save_snapshot(snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
    """
    Upsert a snapshot and mirror it onto the provider profile.

    Both writes share one transaction. Accounts without a provider profile
    simply match no provider row.
    """
    with get_db_session() as session:
        upsert(
            session,
            entitlement_snapshots,
            {
                "account_id": snapshot.account_id,
                "billing_customer_ref": snapshot.billing_customer_ref,
                "subscribed": snapshot.subscribed,
                "tier": snapshot.tier.value if snapshot.tier else None,
                "period_end": snapshot.period_end,
                "last_reconciled_at": snapshot.last_reconciled_at,
            },
            index_elements=["account_id"],
        )
        session.execute(
            update(providers)
            .where(providers.c.user_id == snapshot.account_id)
            .values(
                subscription_tier=snapshot.effective_tier.value,
                subscription_end_date=snapshot.period_end,
                stripe_customer_id=snapshot.billing_customer_ref,
                updated_at=snapshot.last_reconciled_at or datetime.now(timezone.utc),
            )
        )
    return snapshot


def cache_customer_ref(account_id: str, customer_ref: str) -> None:
    """
    Persist a newly resolved customer ref without touching entitlement fields.

    A first-time row is written as unsubscribed and never reconciled; an
    existing row keeps its subscription state and last_reconciled_at.
    """
    with get_db_session() as session:
        upsert(
            session,
            entitlement_snapshots,
            {
                "account_id": account_id,
                "billing_customer_ref": customer_ref,
                "subscribed": False,
                "tier": None,
                "period_end": None,
                "last_reconciled_at": None,
            },
            index_elements=["account_id"],
            update_columns=["billing_customer_ref"],
        )
        session.execute(
            update(providers)
            .where(providers.c.user_id == account_id)
            .values(stripe_customer_id=customer_ref)
        )
