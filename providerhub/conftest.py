# providerhub/conftest.py
import sys
import pytest
from pathlib import Path

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from providerhub.core.config import settings
from providerhub.core.database import create_all_tables, dispose_engine, init_engine


@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    """
    Deterministic Stripe configuration for every test.

    Prices are configured, the secret key is not, so nothing reaches Stripe
    unless a test patches a provider in.
    """
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("STRIPE_PRICE_STARTER", "price_starter")
    monkeypatch.setenv("STRIPE_PRICE_PRO", "price_pro")
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", None)
    monkeypatch.setattr(settings, "AUTH_ALLOW_HEADER_FALLBACK", True)
    yield


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database file per test."""
    dispose_engine()
    init_engine(f"sqlite:///{tmp_path / 'providerhub-test.db'}")
    create_all_tables()
    yield
    dispose_engine()
