"""
Relationship entitlement routes for providers.

- GET  /api/relationships/limits: Tier, quota and usage
- GET  /api/relationships/{relationship_id}/access: Whether a relationship is interactable
- POST /api/relationships/{relationship_id}/accept: Accept a pending client request
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from providerhub.core.auth import get_current_user_id
from providerhub.core.errors import PermissionError
from providerhub.features.accounts.service import resolve_account
from providerhub.features.entitlements.gate import describe_limits
from providerhub.features.relationships.service import accept_relationship, get_access
from providerhub.models.account import ProviderAccount


router = APIRouter(prefix="/relationships", tags=["relationships"])


class LimitsResponse(BaseModel):
    tier: str
    limit: Optional[int]  # null = unlimited
    active_count: int
    remaining: Optional[int]


class AccessResponse(BaseModel):
    relationship_id: str
    can_interact: bool


class AcceptResponse(BaseModel):
    relationship_id: str
    status: str
    accepted_at: Optional[datetime]


def _require_provider(user_id: str) -> None:
    if not isinstance(resolve_account(user_id), ProviderAccount):
        raise PermissionError("Provider account required")


@router.get("/limits", response_model=LimitsResponse)
def get_limits(user_id: str = Depends(get_current_user_id)):
    _require_provider(user_id)
    limits = describe_limits(user_id)
    return LimitsResponse(
        tier=limits.tier.value,
        limit=limits.limit,
        active_count=limits.active_count,
        remaining=limits.remaining,
    )


@router.get("/{relationship_id}/access", response_model=AccessResponse)
def get_relationship_access(relationship_id: str, user_id: str = Depends(get_current_user_id)):
    _require_provider(user_id)
    return get_access(user_id, relationship_id)


@router.post("/{relationship_id}/accept", response_model=AcceptResponse)
def accept(relationship_id: str, user_id: str = Depends(get_current_user_id)):
    """
    Errors:
        403: quota_exceeded when the provider's tier is full
        404: unknown relationship
        409: relationship was rejected
    """
    _require_provider(user_id)
    return accept_relationship(user_id, relationship_id)
