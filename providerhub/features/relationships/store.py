"""
Relationship-count queries used by the entitlement gate.

All counts and ranks consider accepted relationships only. Rank is 1-based
by creation time, ties broken by id, so the ordering is stable across
requests.
"""
from typing import Optional

from sqlalchemy import func, select

from providerhub.core.database import get_db_session, provider_clients, providers, clients


def _provider_id_for(session, provider_account_id: str) -> Optional[str]:
    return session.execute(
        select(providers.c.id).where(providers.c.user_id == provider_account_id)
    ).scalar_one_or_none()


def count_active_relationships(provider_account_id: str) -> int:
    with get_db_session() as session:
        provider_id = _provider_id_for(session, provider_account_id)
        if provider_id is None:
            return 0
        return session.execute(
            select(func.count())
            .select_from(provider_clients)
            .where(provider_clients.c.provider_id == provider_id)
            .where(provider_clients.c.status == "accepted")
        ).scalar_one()


def rank_of_relationship(provider_account_id: str, relationship_id: str) -> Optional[int]:
    """1-based rank among the provider's accepted relationships, or None if not accepted."""
    with get_db_session() as session:
        provider_id = _provider_id_for(session, provider_account_id)
        if provider_id is None:
            return None
        ids = session.execute(
            select(provider_clients.c.id)
            .where(provider_clients.c.provider_id == provider_id)
            .where(provider_clients.c.status == "accepted")
            .order_by(provider_clients.c.created_at.asc(), provider_clients.c.id.asc())
        ).scalars().all()
    try:
        return ids.index(relationship_id) + 1
    except ValueError:
        return None


def get_relationship(relationship_id: str):
    """Relationship row joined with both parties' user ids, or None."""
    with get_db_session() as session:
        return session.execute(
            select(
                provider_clients.c.id,
                provider_clients.c.provider_id,
                provider_clients.c.status,
                provider_clients.c.created_at,
                provider_clients.c.accepted_at,
                providers.c.user_id.label("provider_user_id"),
                clients.c.user_id.label("client_user_id"),
            )
            .select_from(
                provider_clients.join(providers, providers.c.id == provider_clients.c.provider_id)
                .join(clients, clients.c.id == provider_clients.c.client_id)
            )
            .where(provider_clients.c.id == relationship_id)
        ).first()
