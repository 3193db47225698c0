"""
providerhub/features/entitlements/gate.py

EntitlementGate: decides, per provider and relationship, whether interaction
features are available.

Rules:
- Unsubscribed providers get the free limit (5), starter 20, pro unbounded
- Admission compares the accepted count against the limit
- Existing relationships compare their creation rank against the limit, so
  a downgrade turns the excess read-only without deleting anything
- Non-provider accounts are never gated
- Any internal error allows the action (fail open) and logs a warning
"""

from dataclasses import dataclass
from typing import Optional, Protocol
import logging

from providerhub.features.accounts.service import resolve_account
from providerhub.features.entitlements import store
from providerhub.features.relationships import store as relationship_store
from providerhub.models.account import ProviderAccount
from providerhub.models.entitlement import Tier, relationship_limit


logger = logging.getLogger("providerhub")


class RelationshipCounter(Protocol):
    def count_active_relationships(self, provider_account_id: str) -> int:
        ...

    def rank_of_relationship(self, provider_account_id: str, relationship_id: str) -> Optional[int]:
        ...


class _DatabaseCounter:
    def count_active_relationships(self, provider_account_id: str) -> int:
        return relationship_store.count_active_relationships(provider_account_id)

    def rank_of_relationship(self, provider_account_id: str, relationship_id: str) -> Optional[int]:
        return relationship_store.rank_of_relationship(provider_account_id, relationship_id)


_default_counter = _DatabaseCounter()


@dataclass(frozen=True)
class RelationshipLimits:
    tier: Tier
    limit: Optional[int]
    active_count: int
    remaining: Optional[int]


def _is_provider(account_id: str) -> bool:
    return isinstance(resolve_account(account_id), ProviderAccount)


def _effective_tier(account_id: str) -> Tier:
    snapshot = store.get_snapshot(account_id)
    return snapshot.effective_tier if snapshot else Tier.FREE


def can_accept_new_relationship(
    provider_account_id: str,
    *,
    counter: Optional[RelationshipCounter] = None,
) -> bool:
    counter = counter or _default_counter
    try:
        if not _is_provider(provider_account_id):
            return True
        limit = relationship_limit(_effective_tier(provider_account_id))
        if limit is None:
            return True
        return counter.count_active_relationships(provider_account_id) < limit
    except Exception:
        logger.warning(
            "[entitlements] admission check failed, allowing",
            exc_info=True,
            extra={"account_id": provider_account_id},
        )
        return True


def can_interact_with_relationship(
    provider_account_id: str,
    relationship_id: str,
    *,
    counter: Optional[RelationshipCounter] = None,
) -> bool:
    """
    Whether an accepted relationship is within the provider's current quota.

    Relationships that are not accepted have no rank and are not interactable.
    """
    counter = counter or _default_counter
    try:
        if not _is_provider(provider_account_id):
            return True
        limit = relationship_limit(_effective_tier(provider_account_id))
        rank = counter.rank_of_relationship(provider_account_id, relationship_id)
        if rank is None:
            return False
        return limit is None or rank <= limit
    except Exception:
        logger.warning(
            "[entitlements] interaction check failed, allowing",
            exc_info=True,
            extra={"account_id": provider_account_id, "relationship_id": relationship_id},
        )
        return True


def describe_limits(
    provider_account_id: str,
    *,
    counter: Optional[RelationshipCounter] = None,
) -> RelationshipLimits:
    """Tier, quota and usage for the provider dashboard."""
    counter = counter or _default_counter
    tier = _effective_tier(provider_account_id)
    limit = relationship_limit(tier)
    active = counter.count_active_relationships(provider_account_id)
    remaining = None if limit is None else max(limit - active, 0)
    return RelationshipLimits(tier=tier, limit=limit, active_count=active, remaining=remaining)
