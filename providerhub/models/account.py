"""
providerhub/models/account.py

Account variant resolved once per request: an authenticated identity is a
provider, a client, or neither (still onboarding).
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class ProviderAccount:
    user_id: str
    provider_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class ClientAccount:
    user_id: str
    client_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class UnregisteredAccount:
    user_id: str
    email: Optional[str] = None


Account = Union[ProviderAccount, ClientAccount, UnregisteredAccount]
