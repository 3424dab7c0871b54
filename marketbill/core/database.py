"""
Engine, sessions and table definitions for the billing engine.

Tables are declared with SQLAlchemy Core and shared through one MetaData.
Postgres gets a pooled engine; SQLite (tests, local runs) gets a single
shared connection when in-memory so every session sees the same data.
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean,
    JSON, Text, Numeric, Index, UniqueConstraint, text, true, false,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from marketbill.core.config import settings


logger = logging.getLogger("marketbill.database")

metadata = MetaData()

# Postgres pool sizing
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine: Optional[Engine] = None
_SessionLocal = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; normalise everything to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    # TEST_DATABASE_URL wins so a test run never touches the real database
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:")


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        sqlite_args = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(url):
            sqlite_args["poolclass"] = StaticPool
        return create_engine(url, **sqlite_args)
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Build the engine and session factory from an explicit URL or the environment.

    Raises ValueError when no database is configured.
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured (environment or .env)")

    _engine = _build_engine(url)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    logger.info("[db] engine ready", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    One unit of work: commit when the block exits cleanly, roll back and
    re-raise otherwise.

        with get_db_session() as session:
            session.execute(...)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def reset_database() -> None:
    """Drop and recreate every table. Test and local use only."""
    metadata.drop_all(bind=get_engine())
    metadata.create_all(bind=get_engine())


def check_connection() -> bool:
    """Round-trip a trivial query; used by the readiness probe."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("[db] connection check failed", extra={"error": str(e)})
        return False
    return True


# Users (owned by the auth/profile system; read-only here)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(255), nullable=True),
    Column('roles', JSON, nullable=False, default=list),
    Column('verification_status', String(50), nullable=False, server_default='pending'),
    Column('account_status', String(50), nullable=False, server_default='active'),
    Column('disabled_roles', JSON, nullable=False, default=list),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Listings (products/properties owned by the catalog system; read-only here)
listings = Table(
    'listings',
    metadata,
    Column('item_type', String(20), primary_key=True),  # product | property
    Column('item_id', String(100), primary_key=True),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('title', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_listings_owner_type', 'owner_id', 'item_type'),
)

# Subscription plans (reference data)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(50), nullable=False, index=True),  # Basic | Pro | Premium
    Column('price', Numeric(10, 2, asdecimal=False), nullable=False, server_default='0'),
    Column('billing_period', String(20), nullable=False, server_default='monthly'),
    Column('duration_days', Integer, nullable=False, server_default='30'),
    Column('max_listings', Integer, nullable=False, server_default='0'),  # 0 = unlimited
    Column('featured_listings_count', Integer, nullable=False, server_default='0'),  # 0 = unlimited
    Column('boosted_visibility', Boolean, nullable=False, server_default=false()),
    Column('priority_support', Boolean, nullable=False, server_default=false()),
    Column('target_role', String(50), nullable=False, index=True),  # ecommerceSeller | realEstateSeller | both
    Column('is_active', Boolean, nullable=False, server_default=true(), index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_plans_role_active', 'target_role', 'is_active'),
)

# Payment attempts keyed by processor intent id
payments = Table(
    'payments',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False, index=True),  # plans.plan_id, unenforced
    Column('role', String(50), nullable=False),
    Column('intent_id', String(255), nullable=False),
    Column('amount', Numeric(10, 2, asdecimal=False), nullable=False),
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('status', String(20), nullable=False, server_default='pending', index=True),  # pending, succeeded, failed, canceled
    Column('metadata', JSON, nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('failure_reason', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('intent_id', name='uq_payments_intent_id'),
    Index('idx_payments_user_status', 'user_id', 'status'),
    Index('idx_payments_created_at', 'created_at'),
)

# Per-(user, role) entitlement state
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False, index=True),  # plans.plan_id, unenforced
    Column('role', String(50), nullable=False),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False, server_default='active', index=True),  # active, expired, cancelled
    Column('auto_renew', Boolean, nullable=False, server_default=true()),
    Column('listings_used', Integer, nullable=False, server_default='0'),
    Column('featured_used', Integer, nullable=False, server_default='0'),
    Column('payment_intent_id', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_user_role_status', 'user_id', 'role', 'status'),
    Index('idx_subscriptions_status_end', 'status', 'end_date'),
    # At most one active subscription per (user_id, role)
    Index(
        'uq_subscriptions_one_active',
        'user_id',
        'role',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

# Time-bounded promotional placements, one row per item
featured_listings = Table(
    'featured_listings',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('item_type', String(20), nullable=False),  # product | property
    Column('item_id', String(100), nullable=False),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('priority_score', Integer, nullable=False, server_default='10'),
    Column('is_boosted', Boolean, nullable=False, server_default=false(), index=True),
    # Set when the placement took a featured slot; boosting leaves it alone
    Column('consumed_feature_slot', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('item_type', 'item_id', name='uq_featured_listings_item'),
    Index('idx_featured_listings_owner_type_end', 'owner_id', 'item_type', 'end_date'),
    Index('idx_featured_listings_priority', 'item_type', 'priority_score'),
)
