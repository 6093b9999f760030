"""Abstract base classes — persistence and delivery contracts used by the core.

Two implementations exist for every repository: the in-memory one in
``feedpulse.saas.memory`` and the PostgreSQL one under ``feedpulse.api.db``.
None of the contracts assume transactional composition across calls.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING

from feedpulse.core.types import (
    Account,
    AccountToken,
    AccountTokenType,
    ResourceType,
    Subscription,
    SubscriptionUsage,
    TeamInvitation,
    TeamMember,
    UsageEvent,
)

if TYPE_CHECKING:
    from feedpulse.saas.dispatch import UsageJob


class BaseAccountRepository(ABC):
    """Account records: credentials, verification and deactivation state."""

    @abstractmethod
    async def find_by_id(self, account_id: str) -> Account | None: ...

    @abstractmethod
    async def find_by_email(self, email: str) -> Account | None: ...

    @abstractmethod
    async def create(self, account: Account) -> Account: ...

    @abstractmethod
    async def update(self, account: Account) -> None: ...

    @abstractmethod
    async def find_pending_deactivation(self) -> list[Account]: ...


class BaseAccountTokenRepository(ABC):
    """Single-use verification, password reset and email change tokens."""

    @abstractmethod
    async def find_by_token(self, token: str) -> AccountToken | None: ...

    @abstractmethod
    async def create(self, token: AccountToken) -> AccountToken: ...

    @abstractmethod
    async def mark_used(self, token_id: str, at: datetime) -> bool:
        """Set used_at only if still unset. False means the token was already spent."""
        ...

    @abstractmethod
    async def delete_by_account_and_type(
        self, account_id: str, token_type: AccountTokenType
    ) -> None: ...


class BaseTeamMemberRepository(ABC):
    """Membership grants. At most one row per (owner, member) pair."""

    @abstractmethod
    async def find_by_id(self, team_member_id: str) -> TeamMember | None: ...

    @abstractmethod
    async def find_by_owner(self, owner_id: str) -> list[TeamMember]: ...

    @abstractmethod
    async def find_by_member_not_owner(self, member_id: str) -> list[TeamMember]:
        """Accepted memberships of ``member_id`` in organizations it does not own."""
        ...

    @abstractmethod
    async def find_by_member_and_owner(
        self, member_id: str, owner_id: str
    ) -> TeamMember | None: ...

    @abstractmethod
    async def create(self, member: TeamMember) -> TeamMember: ...

    @abstractmethod
    async def update(self, member: TeamMember) -> None: ...

    @abstractmethod
    async def delete(self, team_member_id: str) -> None: ...


class BaseTeamInvitationRepository(ABC):
    @abstractmethod
    async def find_by_id(self, invitation_id: str) -> TeamInvitation | None: ...

    @abstractmethod
    async def find_by_token(self, token: str) -> TeamInvitation | None: ...

    @abstractmethod
    async def find_by_owner_and_email(
        self, owner_id: str, email: str
    ) -> TeamInvitation | None: ...

    @abstractmethod
    async def find_pending_by_owner(
        self, owner_id: str, now: datetime
    ) -> list[TeamInvitation]: ...

    @abstractmethod
    async def find_expired(self, now: datetime) -> list[TeamInvitation]:
        """Unaccepted invitations whose expiry has passed."""
        ...

    @abstractmethod
    async def create(self, invitation: TeamInvitation) -> TeamInvitation: ...

    @abstractmethod
    async def mark_accepted(self, invitation_id: str, at: datetime) -> bool:
        """Set accepted_at only if still unset. False means someone else redeemed it."""
        ...

    @abstractmethod
    async def delete(self, invitation_id: str) -> None: ...


class BaseSubscriptionRepository(ABC):
    """Read side of the billing relationship. Plans are loaded with the subscription."""

    @abstractmethod
    async def find_by_id(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    async def find_by_account_id(self, account_id: str) -> Subscription | None: ...

    @abstractmethod
    async def list_active(self) -> list[Subscription]: ...


class BaseUsageRepository(ABC):
    """Per-period counters and the append-only usage event log."""

    @abstractmethod
    async def find_by_subscription_and_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> SubscriptionUsage | None: ...

    @abstractmethod
    async def create_for_period(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        """Insert the row unless one exists for the same period; return the stored row."""
        ...

    @abstractmethod
    async def increment(
        self, usage_id: str, resource: ResourceType, delta: int, at: datetime
    ) -> None:
        """Add ``delta`` to the counter for ``resource`` in a single write."""
        ...

    @abstractmethod
    async def find_by_subscription(self, subscription_id: str) -> list[SubscriptionUsage]: ...

    @abstractmethod
    async def create_event(self, event: UsageEvent) -> None: ...

    @abstractmethod
    async def find_events_by_subscription(
        self, subscription_id: str, limit: int = 100
    ) -> list[UsageEvent]: ...


class BaseUsageDispatcher(ABC):
    """Hands usage jobs to background consumers without blocking the caller."""

    @abstractmethod
    def submit(self, job: UsageJob) -> bool:
        """Enqueue and return. ``False`` means the job was dropped."""
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class BaseInvitationNotifier(ABC):
    """Delivers invitation tokens to invitees (email delivery lives elsewhere)."""

    @abstractmethod
    async def send_team_invite(
        self, email: str, token: str, organization_name: str
    ) -> None: ...


class BaseAccountNotifier(ABC):
    """Delivers account tokens (verification, password reset, email change)."""

    @abstractmethod
    async def send_verification_email(self, email: str, name: str, token: str) -> None: ...

    @abstractmethod
    async def send_password_reset(self, email: str, name: str, token: str) -> None: ...

    @abstractmethod
    async def send_email_change(self, new_email: str, name: str, token: str) -> None: ...
