"""
Account resolution.

Maps an authenticated user id to its Account variant with a single query
instead of probing the provider and client tables separately.
"""
from typing import Optional

from sqlalchemy import select

from providerhub.core.database import get_db_session, users, providers, clients
from providerhub.core.errors import NotFoundError
from providerhub.models.account import (
    Account,
    ClientAccount,
    ProviderAccount,
    UnregisteredAccount,
)


def resolve_account(user_id: str) -> Account:
    """
    Resolve the account variant for a user.

    Raises:
        NotFoundError: user_id is unknown to the user table
    """
    with get_db_session() as session:
        row = session.execute(
            select(
                users.c.user_id,
                users.c.email,
                providers.c.id.label("provider_id"),
                clients.c.id.label("client_id"),
            )
            .select_from(
                users.outerjoin(providers, providers.c.user_id == users.c.user_id)
                .outerjoin(clients, clients.c.user_id == users.c.user_id)
            )
            .where(users.c.user_id == user_id)
        ).first()

    if row is None:
        raise NotFoundError(f"Unknown account: {user_id}")
    if row.provider_id:
        return ProviderAccount(user_id=row.user_id, provider_id=row.provider_id, email=row.email)
    if row.client_id:
        return ClientAccount(user_id=row.user_id, client_id=row.client_id, email=row.email)
    return UnregisteredAccount(user_id=row.user_id, email=row.email)


def get_account_email(user_id: str) -> Optional[str]:
    with get_db_session() as session:
        return session.execute(
            select(users.c.email).where(users.c.user_id == user_id)
        ).scalar_one_or_none()
