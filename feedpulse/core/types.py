"""System-wide shared types — the single source of truth for all data structures."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from uuid_extensions import uuid7

from feedpulse.core.constants import DEFAULT_DEACTIVATION_GRACE_DAYS, UNLIMITED
from feedpulse.core.exceptions import UnknownResourceTypeError, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Time-ordered identifier used for every persisted row."""
    return str(uuid7())


# ── Enums ────────────────────────────────────────────────────────

class MemberRole(str, Enum):
    VIEWER = "VIEWER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


class ResourceType(str, Enum):
    ORGANIZATION = "organization"
    LOCATION = "location"
    QR_CODE = "qr_code"
    FEEDBACK = "feedback"
    TEAM_MEMBER = "team_member"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    CANCELED = "canceled"
    EXPIRED = "expired"


class AccountTokenType(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"


class UsageEventType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ── Resource mapping tables ──────────────────────────────────────
# Every ResourceType must appear in each table.

RESOURCE_LIMIT_FIELDS: dict[ResourceType, str] = {
    ResourceType.ORGANIZATION: "max_organizations",
    ResourceType.LOCATION: "max_locations",
    ResourceType.QR_CODE: "max_qr_codes",
    ResourceType.FEEDBACK: "max_feedbacks_per_month",
    ResourceType.TEAM_MEMBER: "max_team_members",
}

RESOURCE_USAGE_FIELDS: dict[ResourceType, str] = {
    ResourceType.ORGANIZATION: "organizations_count",
    ResourceType.LOCATION: "locations_count",
    ResourceType.QR_CODE: "qr_codes_count",
    ResourceType.FEEDBACK: "feedbacks_count",
    ResourceType.TEAM_MEMBER: "team_members_count",
}

RESOURCE_DISPLAY_NAMES: dict[ResourceType, str] = {
    ResourceType.ORGANIZATION: "Organization",
    ResourceType.LOCATION: "Location",
    ResourceType.QR_CODE: "QR code",
    ResourceType.FEEDBACK: "Monthly feedback",
    ResourceType.TEAM_MEMBER: "Team member",
}

FEATURE_FLAGS: tuple[str, ...] = (
    "has_basic_analytics",
    "has_advanced_analytics",
    "has_feedback_explorer",
    "has_custom_branding",
    "has_priority_support",
)


def parse_role(value: str | MemberRole) -> MemberRole:
    """Parse a role string at the boundary. Unknown roles are rejected."""
    raw = value.value if isinstance(value, MemberRole) else str(value)
    try:
        return MemberRole(raw.upper())
    except ValueError:
        msg = f"Unknown role: {value}"
        raise ValidationError(msg, {"role": str(value)}) from None


def parse_resource_type(value: str | ResourceType) -> ResourceType:
    """Parse a resource type string. Unknown values are a programmer error."""
    try:
        return ResourceType(value)
    except ValueError:
        msg = f"Unknown resource type: {value}"
        raise UnknownResourceTypeError(msg, {"resource_type": str(value)}) from None


# ── Accounts & Teams ─────────────────────────────────────────────

@dataclass
class Account:
    """An authenticatable identity. Also the tenant for its own resources."""

    email: str
    password_hash: str
    name: str
    account_id: str = field(default_factory=new_id)
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: datetime | None = None
    deactivation_requested_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        if self.first_name or self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        return self.name or self.email

    @property
    def is_pending_deactivation(self) -> bool:
        return self.deactivation_requested_at is not None

    def deactivation_date(
        self, grace_days: int = DEFAULT_DEACTIVATION_GRACE_DAYS
    ) -> datetime | None:
        if self.deactivation_requested_at is None:
            return None
        return self.deactivation_requested_at + timedelta(days=grace_days)

    def should_be_deactivated(
        self,
        now: datetime | None = None,
        grace_days: int = DEFAULT_DEACTIVATION_GRACE_DAYS,
    ) -> bool:
        due = self.deactivation_date(grace_days)
        if due is None:
            return False
        return (now or utcnow()) > due


@dataclass
class TeamMember:
    """Grant for ``member_id`` to act inside ``owner_id``'s resource space."""

    owner_id: str
    member_id: str
    role: MemberRole
    invited_by: str
    team_member_id: str = field(default_factory=new_id)
    invited_at: datetime = field(default_factory=utcnow)
    accepted_at: datetime | None = None

    @property
    def is_external(self) -> bool:
        return self.owner_id != self.member_id


@dataclass
class TeamInvitation:
    """Pending, single-use offer of membership."""

    owner_id: str
    email: str
    role: MemberRole
    token: str
    invited_by: str
    expires_at: datetime
    invitation_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    accepted_at: datetime | None = None

    @property
    def is_accepted(self) -> bool:
        return self.accepted_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.accepted_at is None and (now or utcnow()) < self.expires_at


@dataclass
class AccountToken:
    """Single-use secret mailed to an account owner. ``new_email`` is set for email changes."""

    account_id: str
    token: str
    token_type: AccountTokenType
    expires_at: datetime
    token_id: str = field(default_factory=new_id)
    new_email: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    used_at: datetime | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.used_at is None and (now or utcnow()) < self.expires_at


# ── Subscriptions ────────────────────────────────────────────────

@dataclass
class SubscriptionPlan:
    """Priced bundle of numeric limits (-1 = unlimited) and feature flags."""

    code: str
    name: str
    plan_id: str = field(default_factory=new_id)
    price: float = 0.0
    currency: str = "USD"
    interval: str = "month"
    max_organizations: int = 1
    max_locations: int = UNLIMITED
    max_qr_codes: int = 0
    max_feedbacks_per_month: int = 0
    max_team_members: int = 0
    has_basic_analytics: bool = False
    has_advanced_analytics: bool = False
    has_feedback_explorer: bool = False
    has_custom_branding: bool = False
    has_priority_support: bool = False

    def limit_for(self, resource: ResourceType) -> int:
        return int(getattr(self, RESOURCE_LIMIT_FIELDS[resource]))

    def has_feature(self, flag: str) -> bool:
        if flag not in FEATURE_FLAGS:
            return False
        return bool(getattr(self, flag))


@dataclass
class Subscription:
    account_id: str
    plan: SubscriptionPlan
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    subscription_id: str = field(default_factory=new_id)
    cancel_at: datetime | None = None
    cancelled_at: datetime | None = None
    provider_customer_id: str = ""
    provider_subscription_id: str = ""

    def is_active(self, now: datetime | None = None) -> bool:
        return (
            self.status == SubscriptionStatus.ACTIVE
            and (now or utcnow()) < self.current_period_end
        )


@dataclass
class SubscriptionUsage:
    """Counters for one (subscription, billing period) pair."""

    subscription_id: str
    period_start: datetime
    period_end: datetime
    usage_id: str = field(default_factory=new_id)
    organizations_count: int = 0
    locations_count: int = 0
    qr_codes_count: int = 0
    feedbacks_count: int = 0
    team_members_count: int = 0
    last_updated_at: datetime = field(default_factory=utcnow)

    def count_for(self, resource: ResourceType) -> int:
        return int(getattr(self, RESOURCE_USAGE_FIELDS[resource]))


@dataclass
class UsageEvent:
    """Append-only audit record of one usage-affecting action."""

    subscription_id: str
    event_type: UsageEventType
    resource_type: ResourceType
    event_id: str = field(default_factory=new_id)
    resource_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class QuotaDecision:
    allowed: bool
    reason: str = ""
    current: int | None = None
    limit: int | None = None


# ── Claims ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class FeatureSnapshot:
    """Plan limits and flags captured when a token is issued."""

    max_organizations: int
    max_qr_codes: int
    max_feedbacks_per_month: int
    max_team_members: int
    has_basic_analytics: bool = False
    has_advanced_analytics: bool = False
    has_feedback_explorer: bool = False
    has_custom_branding: bool = False
    has_priority_support: bool = False

    @classmethod
    def from_plan(cls, plan: SubscriptionPlan) -> FeatureSnapshot:
        return cls(**{f.name: getattr(plan, f.name) for f in fields(cls)})

    @classmethod
    def from_claims(cls, data: dict[str, Any] | None) -> FeatureSnapshot | None:
        if not data:
            return None
        return cls(**{f.name: data[f.name] for f in fields(cls) if f.name in data})

    def to_claims(self) -> dict[str, Any]:
        return asdict(self)

    def has_feature(self, flag: str) -> bool:
        if flag not in FEATURE_FLAGS:
            return False
        return bool(getattr(self, flag))


@dataclass(frozen=True)
class Claims:
    """Resolved identity carried inside a signed token.

    ``account_id`` is the tenant whose resources the caller acts on;
    ``member_id`` is the identity that actually authenticated.
    """

    account_id: str
    member_id: str
    name: str
    email: str
    role: MemberRole
    features: FeatureSnapshot | None = None
    issued_at: int = 0
    expires_at: int = 0

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "account_id": self.account_id,
            "member_id": self.member_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
        }
        if self.features is not None:
            payload["subscription_features"] = self.features.to_claims()
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Claims:
        """Build claims from a verified token payload. Raises on missing/unknown fields."""
        return cls(
            account_id=str(payload["account_id"]),
            member_id=str(payload["member_id"]),
            name=str(payload.get("name", "")),
            email=str(payload.get("email", "")),
            role=MemberRole(payload["role"]),
            features=FeatureSnapshot.from_claims(payload.get("subscription_features")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload.get("exp", 0)),
        )


@dataclass(frozen=True)
class TenantContext:
    """Per-request resolution of personal identity vs. resource tenant."""

    personal_account_id: str
    resource_account_id: str
    role: MemberRole
    is_team_member: bool
    claims: Claims | None = None
