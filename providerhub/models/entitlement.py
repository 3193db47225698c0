"""
providerhub/models/entitlement.py

Entitlement snapshot and tier limits.

A snapshot is the locally cached view of an account's billing state. It is
written only by reconciliation and read by the entitlement gate.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


# None = unbounded
TIER_RELATIONSHIP_LIMITS = {
    Tier.FREE: 5,
    Tier.STARTER: 20,
    Tier.PRO: None,
}

PAID_TIERS = (Tier.STARTER, Tier.PRO)


def relationship_limit(tier: Optional[Tier]) -> Optional[int]:
    """Accepted-relationship quota for a tier; unsubscribed counts as free."""
    return TIER_RELATIONSHIP_LIMITS[tier or Tier.FREE]


class EntitlementSnapshot(BaseModel):
    """
    Normalized billing state for one account.

    Invariant: subscribed implies tier and period_end are set. An account
    without an active subscription still has a snapshot (subscribed=False).
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    billing_customer_ref: Optional[str] = None
    subscribed: bool = False
    tier: Optional[Tier] = None
    period_end: Optional[datetime] = None
    last_reconciled_at: Optional[datetime] = None  # None until first reconciliation

    @model_validator(mode="after")
    def _check_subscribed_fields(self):
        if self.subscribed and (self.tier is None or self.period_end is None):
            raise ValueError("subscribed snapshot requires tier and period_end")
        return self

    @property
    def effective_tier(self) -> Tier:
        return self.tier if self.subscribed and self.tier else Tier.FREE

    def same_state(self, other: "EntitlementSnapshot") -> bool:
        """Equality ignoring last_reconciled_at."""
        return (
            self.model_dump(exclude={"last_reconciled_at"})
            == other.model_dump(exclude={"last_reconciled_at"})
        )
