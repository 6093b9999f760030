"""PostgreSQL connection and schema definitions."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from feedpulse.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

accounts = Table(
    "accounts",
    metadata,
    Column("account_id", String, primary_key=True),
    Column("email", String, nullable=False, unique=True),
    Column("password_hash", String, nullable=False),
    Column("name", String, nullable=False, default=""),
    Column("first_name", String, nullable=False, default=""),
    Column("last_name", String, nullable=False, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("email_verified_at", DateTime(timezone=True)),
    Column("deactivation_requested_at", DateTime(timezone=True), index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

team_members = Table(
    "team_members",
    metadata,
    Column("team_member_id", String, primary_key=True),
    Column("owner_id", String, ForeignKey("accounts.account_id"), nullable=False, index=True),
    Column("member_id", String, ForeignKey("accounts.account_id"), nullable=False, index=True),
    Column("role", String, nullable=False),
    Column("invited_by", String, nullable=False),
    Column("invited_at", DateTime(timezone=True), nullable=False),
    Column("accepted_at", DateTime(timezone=True)),
    UniqueConstraint("owner_id", "member_id", name="uq_team_members_owner_member"),
)

# An identity belongs to at most one organization it does not own.
Index(
    "uq_team_members_single_external",
    team_members.c.member_id,
    unique=True,
    postgresql_where=team_members.c.owner_id != team_members.c.member_id,
)

team_invitations = Table(
    "team_invitations",
    metadata,
    Column("invitation_id", String, primary_key=True),
    Column("owner_id", String, ForeignKey("accounts.account_id"), nullable=False, index=True),
    Column("email", String, nullable=False, index=True),
    Column("role", String, nullable=False),
    Column("token", String, nullable=False, unique=True),
    Column("invited_by", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("accepted_at", DateTime(timezone=True)),
)

account_tokens = Table(
    "account_tokens",
    metadata,
    Column("token_id", String, primary_key=True),
    Column("account_id", String, ForeignKey("accounts.account_id"), nullable=False, index=True),
    Column("token", String, nullable=False, unique=True),
    Column("token_type", String, nullable=False),
    Column("new_email", String),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("used_at", DateTime(timezone=True)),
)

subscription_plans = Table(
    "subscription_plans",
    metadata,
    Column("plan_id", String, primary_key=True),
    Column("code", String, nullable=False, unique=True),
    Column("name", String, nullable=False),
    Column("price", Float, nullable=False, default=0.0),
    Column("currency", String, nullable=False, default="USD"),
    Column("interval", String, nullable=False, default="month"),
    Column("max_organizations", Integer, nullable=False, default=1),
    Column("max_locations", Integer, nullable=False, default=-1),
    Column("max_qr_codes", Integer, nullable=False, default=0),
    Column("max_feedbacks_per_month", Integer, nullable=False, default=0),
    Column("max_team_members", Integer, nullable=False, default=0),
    Column("has_basic_analytics", Boolean, nullable=False, default=False),
    Column("has_advanced_analytics", Boolean, nullable=False, default=False),
    Column("has_feedback_explorer", Boolean, nullable=False, default=False),
    Column("has_custom_branding", Boolean, nullable=False, default=False),
    Column("has_priority_support", Boolean, nullable=False, default=False),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("subscription_id", String, primary_key=True),
    Column("account_id", String, ForeignKey("accounts.account_id"), nullable=False, index=True),
    Column("plan_id", String, ForeignKey("subscription_plans.plan_id"), nullable=False),
    Column("status", String, nullable=False, index=True),
    Column("current_period_start", DateTime(timezone=True), nullable=False),
    Column("current_period_end", DateTime(timezone=True), nullable=False),
    Column("cancel_at", DateTime(timezone=True)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("provider_customer_id", String, nullable=False, default=""),
    Column("provider_subscription_id", String, nullable=False, default=""),
)

subscription_usage = Table(
    "subscription_usage",
    metadata,
    Column("usage_id", String, primary_key=True),
    Column(
        "subscription_id", String,
        ForeignKey("subscriptions.subscription_id"), nullable=False, index=True,
    ),
    Column("period_start", DateTime(timezone=True), nullable=False),
    Column("period_end", DateTime(timezone=True), nullable=False),
    Column("organizations_count", Integer, nullable=False, default=0),
    Column("locations_count", Integer, nullable=False, default=0),
    Column("qr_codes_count", Integer, nullable=False, default=0),
    Column("feedbacks_count", Integer, nullable=False, default=0),
    Column("team_members_count", Integer, nullable=False, default=0),
    Column("last_updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint(
        "subscription_id", "period_start", "period_end",
        name="uq_subscription_usage_period",
    ),
)

usage_events = Table(
    "usage_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column(
        "subscription_id", String,
        ForeignKey("subscriptions.subscription_id"), nullable=False, index=True,
    ),
    Column("event_type", String, nullable=False),
    Column("resource_type", String, nullable=False),
    Column("resource_id", String),
    Column("metadata", JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
        )
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema() -> None:
    """Create all tables and indexes."""
    engine = await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    log.info("schema_initialized", tables=sorted(metadata.tables))


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
