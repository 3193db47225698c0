"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file databases)
- Dialect-aware atomic upserts
"""
from typing import Optional, Dict, Any, Sequence
from contextlib import contextmanager
from sqlalchemy import false, create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from providerhub.core.config import settings

logger = logging.getLogger("providerhub")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        # Sync endpoints run in a threadpool
        connect_args["check_same_thread"] = False

    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-initializes (tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def upsert(
    session: Session,
    table: Table,
    values: Dict[str, Any],
    *,
    index_elements: Sequence[str],
    update_columns: Optional[Sequence[str]] = None,
) -> None:
    """
    Atomic INSERT .. ON CONFLICT DO UPDATE keyed by index_elements.

    Only PostgreSQL and SQLite are supported; both implement the same
    conflict clause so a single statement replaces read-then-write.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values)
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect}")

    columns = update_columns or [k for k in values if k not in index_elements]
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={c: stmt.excluded[c] for c in columns},
    )
    session.execute(stmt)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users table (authenticated identities from the auth provider)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, index=True),
    Column('display_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Provider profiles
providers = Table(
    'providers',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, unique=True),
    Column('business_name', Text, nullable=True),
    # Denormalized mirror of the entitlement snapshot
    Column('subscription_tier', String(20), nullable=False, server_default='free'),
    Column('subscription_end_date', DateTime(timezone=True), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Client profiles
clients = Table(
    'clients',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, unique=True),
    Column('full_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Provider <-> client relationships
provider_clients = Table(
    'provider_clients',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('provider_id', String(100), ForeignKey('providers.id'), nullable=False),
    Column('client_id', String(100), ForeignKey('clients.id'), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, accepted, rejected
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('accepted_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('provider_id', 'client_id', name='uq_provider_clients_pair'),
    # Ranking query: accepted relationships by creation order
    Index('idx_provider_clients_provider_status_created', 'provider_id', 'status', 'created_at'),
)

# Entitlement snapshots (one row per account, written only by reconciliation)
entitlement_snapshots = Table(
    'entitlement_snapshots',
    metadata,
    Column('account_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('billing_customer_ref', String(100), nullable=True, index=True),
    Column('subscribed', Boolean, nullable=False, server_default=false()),
    Column('tier', String(20), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('last_reconciled_at', DateTime(timezone=True), nullable=True),  # null until first reconciliation
)

# Billing webhook events (idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False),
    Column('payload_hash', String(64), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
