"""Pydantic V2 request/response schemas for the FeedPulse API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from feedpulse.core.types import (
    FEATURE_FLAGS,
    RESOURCE_LIMIT_FIELDS,
    RESOURCE_USAGE_FIELDS,
    Account,
    FeatureSnapshot,
    Subscription,
    SubscriptionUsage,
    TeamInvitation,
    TeamMember,
    UsageEvent,
)


# ── Auth ──────────────────────────────────────────────────────────

class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=8, max_length=72)
    name: str = Field(..., min_length=1, max_length=200)
    first_name: str = ""
    last_name: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    """Request body for updating the caller's own profile."""

    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class AccountResponse(BaseModel):
    account_id: str
    email: str
    name: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    email_verified: bool = False
    deactivation_requested_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> AccountResponse:
        return cls(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
            first_name=account.first_name,
            last_name=account.last_name,
            is_active=account.is_active,
            email_verified=account.email_verified,
            deactivation_requested_at=account.deactivation_requested_at,
            created_at=account.created_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse | None = None


class FeaturesOut(BaseModel):
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
    def from_snapshot(cls, snapshot: FeatureSnapshot | None) -> FeaturesOut | None:
        if snapshot is None:
            return None
        return cls(**snapshot.to_claims())


class MeResponse(BaseModel):
    """Current authenticated identity and the tenant it acts for."""

    member_id: str
    tenant_id: str
    name: str
    email: str
    role: str
    is_team_member: bool
    features: FeaturesOut | None = None


class DeactivationResponse(BaseModel):
    requested_at: datetime
    deactivate_on: datetime


class AccountTokenRequest(BaseModel):
    """Body carrying a mailed verification or email change token."""

    token: str = Field(..., min_length=1)


class EmailRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, max_length=72)


class EmailChangeRequest(BaseModel):
    new_email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")


class MessageResponse(BaseModel):
    message: str


# ── Team ──────────────────────────────────────────────────────────

class InviteRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    role: str = Field(..., min_length=1)


class RoleUpdate(BaseModel):
    role: str = Field(..., min_length=1)


class AcceptInviteRequest(BaseModel):
    token: str = Field(..., min_length=1)


class TeamMemberOut(BaseModel):
    team_member_id: str
    owner_id: str
    member_id: str
    role: str
    invited_by: str
    invited_at: datetime
    accepted_at: datetime | None = None

    @classmethod
    def from_member(cls, member: TeamMember) -> TeamMemberOut:
        return cls(
            team_member_id=member.team_member_id,
            owner_id=member.owner_id,
            member_id=member.member_id,
            role=member.role.value,
            invited_by=member.invited_by,
            invited_at=member.invited_at,
            accepted_at=member.accepted_at,
        )


class InvitationOut(BaseModel):
    """Invitation as shown to the inviting team. The token is never returned."""

    invitation_id: str
    owner_id: str
    email: str
    role: str
    invited_by: str
    created_at: datetime
    expires_at: datetime
    accepted_at: datetime | None = None

    @classmethod
    def from_invitation(cls, invitation: TeamInvitation) -> InvitationOut:
        return cls(
            invitation_id=invitation.invitation_id,
            owner_id=invitation.owner_id,
            email=invitation.email,
            role=invitation.role.value,
            invited_by=invitation.invited_by,
            created_at=invitation.created_at,
            expires_at=invitation.expires_at,
            accepted_at=invitation.accepted_at,
        )


# ── Subscription & Usage ─────────────────────────────────────────

class PlanOut(BaseModel):
    plan_id: str
    code: str
    name: str
    price: float
    currency: str
    interval: str
    limits: dict[str, int]
    features: dict[str, bool]


class SubscriptionOut(BaseModel):
    subscription_id: str
    account_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at: datetime | None = None
    plan: PlanOut

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> SubscriptionOut:
        plan = subscription.plan
        return cls(
            subscription_id=subscription.subscription_id,
            account_id=subscription.account_id,
            status=subscription.status.value,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at=subscription.cancel_at,
            plan=PlanOut(
                plan_id=plan.plan_id,
                code=plan.code,
                name=plan.name,
                price=plan.price,
                currency=plan.currency,
                interval=plan.interval,
                limits={r.value: plan.limit_for(r) for r in RESOURCE_LIMIT_FIELDS},
                features={flag: plan.has_feature(flag) for flag in FEATURE_FLAGS},
            ),
        )


class UsageEventOut(BaseModel):
    event_id: str
    event_type: str
    resource_type: str
    resource_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_event(cls, event: UsageEvent) -> UsageEventOut:
        return cls(
            event_id=event.event_id,
            event_type=event.event_type.value,
            resource_type=event.resource_type.value,
            resource_id=event.resource_id,
            created_at=event.created_at,
        )


class UsageOut(BaseModel):
    subscription_id: str
    period_start: datetime
    period_end: datetime
    limits: dict[str, int]
    current: dict[str, int] = Field(default_factory=dict)
    recent_events: list[UsageEventOut] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        subscription: Subscription,
        usage: SubscriptionUsage,
        events: list[UsageEvent],
    ) -> UsageOut:
        return cls(
            subscription_id=subscription.subscription_id,
            period_start=usage.period_start,
            period_end=usage.period_end,
            limits={r.value: subscription.plan.limit_for(r) for r in RESOURCE_USAGE_FIELDS},
            current={r.value: usage.count_for(r) for r in RESOURCE_USAGE_FIELDS},
            recent_events=[UsageEventOut.from_event(e) for e in events],
        )


# ── Generic ───────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "dev"
    storage: str = "memory"


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody
