"""
Relationship lifecycle operations that depend on entitlements.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update

from providerhub.core.database import get_db_session, provider_clients, providers
from providerhub.core.errors import ConflictError, NotFoundError, PermissionError, QuotaExceededError
from providerhub.features.entitlements.gate import (
    RelationshipCounter,
    can_accept_new_relationship,
    can_interact_with_relationship,
    describe_limits,
)
from providerhub.features.relationships.store import get_relationship

logger = logging.getLogger("providerhub")


def _require_owned(provider_account_id: str, relationship_id: str):
    row = get_relationship(relationship_id)
    if row is None:
        raise NotFoundError("Relationship not found")
    if row.provider_user_id != provider_account_id:
        raise PermissionError("Relationship belongs to another provider")
    return row


def _raise_quota_exceeded(provider_account_id: str, counter: Optional[RelationshipCounter]):
    limits = describe_limits(provider_account_id, counter=counter)
    logger.info(
        "[relationships] accept blocked by quota",
        extra={"account_id": provider_account_id, "tier": limits.tier.value, "limit": limits.limit},
    )
    raise QuotaExceededError(
        "Relationship limit reached for your plan",
        details={"tier": limits.tier.value, "limit": limits.limit},
    )


def _admission_limit(provider_account_id: str, counter: Optional[RelationshipCounter]) -> Optional[int]:
    """Quota for the guarded update; None (unguarded) when it cannot be read."""
    try:
        return describe_limits(provider_account_id, counter=counter).limit
    except Exception:
        logger.warning(
            "[relationships] quota lookup failed, accepting without guard",
            exc_info=True,
            extra={"account_id": provider_account_id},
        )
        return None


def accept_relationship(
    provider_account_id: str,
    relationship_id: str,
    *,
    counter: Optional[RelationshipCounter] = None,
) -> Dict[str, Any]:
    """
    Accept a pending client request.

    Accepting an already accepted relationship is a no-op.

    Raises:
        NotFoundError: unknown relationship
        PermissionError: relationship belongs to another provider
        ConflictError: relationship was rejected
        QuotaExceededError: the provider's tier has no room left
    """
    row = _require_owned(provider_account_id, relationship_id)
    if row.status == "accepted":
        return {"relationship_id": relationship_id, "status": "accepted", "accepted_at": row.accepted_at}
    if row.status != "pending":
        raise ConflictError(f"Relationship is {row.status}")

    if not can_accept_new_relationship(provider_account_id, counter=counter):
        _raise_quota_exceeded(provider_account_id, counter)

    limit = _admission_limit(provider_account_id, counter)
    accepted_at = datetime.now(timezone.utc)
    with get_db_session() as session:
        # Accepts for one provider queue on its profile row; the count guard
        # below then sees every earlier accept.
        session.execute(
            select(providers.c.id).where(providers.c.id == row.provider_id).with_for_update()
        )
        stmt = (
            update(provider_clients)
            .where(provider_clients.c.id == relationship_id)
            .where(provider_clients.c.status == "pending")
            .values(status="accepted", accepted_at=accepted_at)
        )
        if limit is not None:
            active = (
                select(func.count())
                .select_from(provider_clients)
                .where(provider_clients.c.provider_id == row.provider_id)
                .where(provider_clients.c.status == "accepted")
                .scalar_subquery()
            )
            stmt = stmt.where(active < limit)
        updated = session.execute(stmt).rowcount

    if not updated:
        current = get_relationship(relationship_id)
        if current is not None and current.status == "accepted":
            return {"relationship_id": relationship_id, "status": "accepted", "accepted_at": current.accepted_at}
        if current is not None and current.status != "pending":
            raise ConflictError(f"Relationship is {current.status}")
        _raise_quota_exceeded(provider_account_id, counter)
    logger.info(
        "[relationships] accepted",
        extra={"account_id": provider_account_id, "relationship_id": relationship_id},
    )
    return {"relationship_id": relationship_id, "status": "accepted", "accepted_at": accepted_at}


def get_access(provider_account_id: str, relationship_id: str) -> Dict[str, Any]:
    _require_owned(provider_account_id, relationship_id)
    return {
        "relationship_id": relationship_id,
        "can_interact": can_interact_with_relationship(provider_account_id, relationship_id),
    }


def require_call_participant(user_id: str, relationship_id: str) -> None:
    """
    Admit a user to a relationship's call room.

    Only the two parties of an accepted relationship may share its room. The
    provider side is also held to the plan quota, so relationships left over
    the limit by a downgrade cannot be used for calls.

    Raises:
        PermissionError: not a party of an accepted relationship
        QuotaExceededError: the relationship is outside the provider's plan
    """
    row = get_relationship(relationship_id)
    if row is None or row.status != "accepted" or user_id not in (row.provider_user_id, row.client_user_id):
        raise PermissionError("Not a participant of this call")
    if user_id == row.provider_user_id and not can_interact_with_relationship(user_id, relationship_id):
        limits = describe_limits(user_id)
        raise QuotaExceededError(
            "Relationship is outside your plan's limit",
            details={"tier": limits.tier.value, "limit": limits.limit},
        )
