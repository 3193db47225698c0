"""
Price <-> tier mapping.

Two-stage resolution: exact price id lookup against configured prices, then
a unit-amount threshold heuristic for prices that are not configured
(legacy or ad hoc prices created in the dashboard). Every fallback use is
logged as a data-quality signal.
"""
import logging
import os
from typing import Callable, Dict, Optional

from providerhub.core.config import settings
from providerhub.models.entitlement import PAID_TIERS, Tier

logger = logging.getLogger("providerhub")

_PRICE_ENV_KEYS = {
    Tier.STARTER: "STRIPE_PRICE_STARTER",
    Tier.PRO: "STRIPE_PRICE_PRO",
}


def get_price_for_tier(tier: Tier) -> Optional[str]:
    """Map a paid tier to its configured price id."""
    env_key = _PRICE_ENV_KEYS.get(tier)
    if not env_key:
        return None
    return os.getenv(env_key) or getattr(settings, env_key, None)


def price_tier_map() -> Dict[str, Tier]:
    """Configured price id -> tier, skipping unset prices."""
    mapping = {}
    for tier in PAID_TIERS:
        price_id = get_price_for_tier(tier)
        if price_id:
            mapping[price_id] = tier
    return mapping


def tier_from_amount(amount: Optional[int]) -> Tier:
    """Nearest tier by monthly unit amount (minor currency units)."""
    if amount is not None and amount >= settings.TIER_PRO_MIN_AMOUNT_CENTS:
        return Tier.PRO
    # At or below the starter ceiling and the gap between the thresholds
    # both round down to starter.
    return Tier.STARTER


def resolve_tier(
    price_id: Optional[str],
    amount_lookup: Callable[[str], Optional[int]],
    *,
    account_id: Optional[str] = None,
) -> Tier:
    """
    Resolve the tier of an active subscription's price.

    Args:
        price_id: Price attached to the subscription (may be None)
        amount_lookup: Fetches a price's unit amount for the fallback path
        account_id: For logging only
    """
    mapping = price_tier_map()
    if price_id and price_id in mapping:
        return mapping[price_id]

    amount = amount_lookup(price_id) if price_id else None
    tier = tier_from_amount(amount)
    logger.warning(
        "[billing] unrecognized price, tier resolved by amount",
        extra={
            "account_id": account_id,
            "price_id": price_id,
            "unit_amount": amount,
            "resolved_tier": tier.value,
        },
    )
    return tier


def is_recognized_paid_price(price_id: Optional[str]) -> bool:
    return bool(price_id) and price_id in price_tier_map()
