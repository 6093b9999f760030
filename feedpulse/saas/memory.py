"""In-memory repositories — development backend and test doubles.

Records are copied on the way in and out so that callers mutate their own
objects, the same as with a database. Uniqueness rules match the SQL schema.
"""

from __future__ import annotations

import copy
from datetime import datetime

from feedpulse.core.exceptions import ConflictError
from feedpulse.core.interfaces import (
    BaseAccountRepository,
    BaseAccountNotifier,
    BaseAccountTokenRepository,
    BaseInvitationNotifier,
    BaseSubscriptionRepository,
    BaseTeamInvitationRepository,
    BaseTeamMemberRepository,
    BaseUsageRepository,
)
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    RESOURCE_USAGE_FIELDS,
    Account,
    AccountToken,
    AccountTokenType,
    ResourceType,
    Subscription,
    SubscriptionStatus,
    SubscriptionUsage,
    TeamInvitation,
    TeamMember,
    UsageEvent,
)

log = get_logger(__name__)


class InMemoryAccountRepository(BaseAccountRepository):
    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._email_index: dict[str, str] = {}  # email -> account_id

    async def find_by_id(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def find_by_email(self, email: str) -> Account | None:
        account_id = self._email_index.get(email)
        if account_id is None:
            return None
        return await self.find_by_id(account_id)

    async def create(self, account: Account) -> Account:
        if account.email in self._email_index:
            raise ConflictError("Email already registered", {"email": account.email})
        self._accounts[account.account_id] = copy.deepcopy(account)
        self._email_index[account.email] = account.account_id
        return account

    async def update(self, account: Account) -> None:
        previous = self._accounts.get(account.account_id)
        if previous is not None and previous.email != account.email:
            owner = self._email_index.get(account.email)
            if owner is not None and owner != account.account_id:
                raise ConflictError("Email already registered", {"email": account.email})
            self._email_index.pop(previous.email, None)
            self._email_index[account.email] = account.account_id
        self._accounts[account.account_id] = copy.deepcopy(account)

    async def find_pending_deactivation(self) -> list[Account]:
        return [
            copy.deepcopy(a) for a in self._accounts.values()
            if a.is_active and a.deactivation_requested_at is not None
        ]


class InMemoryAccountTokenRepository(BaseAccountTokenRepository):
    def __init__(self) -> None:
        self._tokens: dict[str, AccountToken] = {}  # token -> record

    async def find_by_token(self, token: str) -> AccountToken | None:
        record = self._tokens.get(token)
        return copy.deepcopy(record) if record else None

    async def create(self, token: AccountToken) -> AccountToken:
        if token.token in self._tokens:
            raise ConflictError("Account token collision")
        self._tokens[token.token] = copy.deepcopy(token)
        return token

    async def mark_used(self, token_id: str, at: datetime) -> bool:
        for record in self._tokens.values():
            if record.token_id != token_id:
                continue
            if record.used_at is not None:
                return False
            record.used_at = at
            return True
        return False

    async def delete_by_account_and_type(
        self, account_id: str, token_type: AccountTokenType
    ) -> None:
        stale = [
            key for key, record in self._tokens.items()
            if record.account_id == account_id and record.token_type == token_type
        ]
        for key in stale:
            del self._tokens[key]


class InMemoryTeamMemberRepository(BaseTeamMemberRepository):
    def __init__(self) -> None:
        self._members: dict[str, TeamMember] = {}

    async def find_by_id(self, team_member_id: str) -> TeamMember | None:
        member = self._members.get(team_member_id)
        return copy.deepcopy(member) if member else None

    async def find_by_owner(self, owner_id: str) -> list[TeamMember]:
        rows = [m for m in self._members.values() if m.owner_id == owner_id]
        return [copy.deepcopy(m) for m in sorted(rows, key=lambda m: m.invited_at)]

    async def find_by_member_not_owner(self, member_id: str) -> list[TeamMember]:
        return [
            copy.deepcopy(m) for m in self._members.values()
            if m.member_id == member_id
            and m.owner_id != member_id
            and m.accepted_at is not None
        ]

    async def find_by_member_and_owner(
        self, member_id: str, owner_id: str
    ) -> TeamMember | None:
        for m in self._members.values():
            if m.member_id == member_id and m.owner_id == owner_id:
                return copy.deepcopy(m)
        return None

    async def create(self, member: TeamMember) -> TeamMember:
        for m in self._members.values():
            if m.member_id != member.member_id:
                continue
            if m.owner_id == member.owner_id:
                raise ConflictError("User is already a team member")
            if member.is_external and m.is_external:
                raise ConflictError("Account already belongs to another organization")
        self._members[member.team_member_id] = copy.deepcopy(member)
        return member

    async def update(self, member: TeamMember) -> None:
        self._members[member.team_member_id] = copy.deepcopy(member)

    async def delete(self, team_member_id: str) -> None:
        self._members.pop(team_member_id, None)


class InMemoryTeamInvitationRepository(BaseTeamInvitationRepository):
    def __init__(self) -> None:
        self._invitations: dict[str, TeamInvitation] = {}
        self._token_index: dict[str, str] = {}  # token -> invitation_id

    async def find_by_id(self, invitation_id: str) -> TeamInvitation | None:
        invitation = self._invitations.get(invitation_id)
        return copy.deepcopy(invitation) if invitation else None

    async def find_by_token(self, token: str) -> TeamInvitation | None:
        invitation_id = self._token_index.get(token)
        if invitation_id is None:
            return None
        return await self.find_by_id(invitation_id)

    async def find_by_owner_and_email(
        self, owner_id: str, email: str
    ) -> TeamInvitation | None:
        matches = [
            i for i in self._invitations.values()
            if i.owner_id == owner_id and i.email == email
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda i: i.created_at))

    async def find_pending_by_owner(
        self, owner_id: str, now: datetime
    ) -> list[TeamInvitation]:
        rows = [
            i for i in self._invitations.values()
            if i.owner_id == owner_id and i.is_valid(now)
        ]
        return [copy.deepcopy(i) for i in sorted(rows, key=lambda i: i.created_at)]

    async def find_expired(self, now: datetime) -> list[TeamInvitation]:
        return [
            copy.deepcopy(i) for i in self._invitations.values()
            if i.accepted_at is None and not i.is_valid(now)
        ]

    async def create(self, invitation: TeamInvitation) -> TeamInvitation:
        if invitation.token in self._token_index:
            raise ConflictError("Invitation token collision")
        self._invitations[invitation.invitation_id] = copy.deepcopy(invitation)
        self._token_index[invitation.token] = invitation.invitation_id
        return invitation

    async def mark_accepted(self, invitation_id: str, at: datetime) -> bool:
        invitation = self._invitations.get(invitation_id)
        if invitation is None or invitation.accepted_at is not None:
            return False
        invitation.accepted_at = at
        return True

    async def delete(self, invitation_id: str) -> None:
        invitation = self._invitations.pop(invitation_id, None)
        if invitation is not None:
            self._token_index.pop(invitation.token, None)


class InMemorySubscriptionRepository(BaseSubscriptionRepository):
    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    def add(self, subscription: Subscription) -> Subscription:
        """Store or replace a subscription. Billing owns writes in production."""
        self._subscriptions[subscription.subscription_id] = copy.deepcopy(subscription)
        log.debug(
            "subscription_stored",
            subscription_id=subscription.subscription_id,
            account_id=subscription.account_id,
            plan=subscription.plan.code,
        )
        return subscription

    async def find_by_id(self, subscription_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        return copy.deepcopy(subscription) if subscription else None

    async def find_by_account_id(self, account_id: str) -> Subscription | None:
        rows = [s for s in self._subscriptions.values() if s.account_id == account_id]
        if not rows:
            return None
        # Prefer an active subscription over older ended ones.
        rows.sort(
            key=lambda s: (s.status == SubscriptionStatus.ACTIVE, s.current_period_start),
            reverse=True,
        )
        return copy.deepcopy(rows[0])

    async def list_active(self) -> list[Subscription]:
        return [
            copy.deepcopy(s) for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.ACTIVE
        ]


class InMemoryUsageRepository(BaseUsageRepository):
    def __init__(self) -> None:
        self._usage: dict[str, SubscriptionUsage] = {}
        self._period_index: dict[tuple[str, datetime, datetime], str] = {}
        self._events: list[UsageEvent] = []

    async def find_by_subscription_and_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> SubscriptionUsage | None:
        usage_id = self._period_index.get((subscription_id, period_start, period_end))
        if usage_id is None:
            return None
        return copy.deepcopy(self._usage[usage_id])

    async def create_for_period(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        key = (usage.subscription_id, usage.period_start, usage.period_end)
        existing_id = self._period_index.get(key)
        if existing_id is not None:
            return copy.deepcopy(self._usage[existing_id])
        self._usage[usage.usage_id] = copy.deepcopy(usage)
        self._period_index[key] = usage.usage_id
        return usage

    async def increment(
        self, usage_id: str, resource: ResourceType, delta: int, at: datetime
    ) -> None:
        row = self._usage[usage_id]
        column = RESOURCE_USAGE_FIELDS[resource]
        setattr(row, column, max(0, getattr(row, column) + delta))
        row.last_updated_at = at

    async def find_by_subscription(self, subscription_id: str) -> list[SubscriptionUsage]:
        rows = [u for u in self._usage.values() if u.subscription_id == subscription_id]
        return [copy.deepcopy(u) for u in sorted(rows, key=lambda u: u.period_start, reverse=True)]

    async def create_event(self, event: UsageEvent) -> None:
        self._events.append(copy.deepcopy(event))

    async def find_events_by_subscription(
        self, subscription_id: str, limit: int = 100
    ) -> list[UsageEvent]:
        rows = [e for e in self._events if e.subscription_id == subscription_id]
        return [copy.deepcopy(e) for e in reversed(rows[-limit:])]


class LoggingInvitationNotifier(BaseInvitationNotifier):
    """Development notifier: logs the accept link instead of sending email."""

    def __init__(self, frontend_url: str) -> None:
        self._frontend_url = frontend_url.rstrip("/")

    async def send_team_invite(
        self, email: str, token: str, organization_name: str
    ) -> None:
        log.info(
            "team_invite_link",
            email=email,
            organization=organization_name,
            url=f"{self._frontend_url}/accept-invite?token={token}",
        )


class LoggingAccountNotifier(BaseAccountNotifier):
    """Development notifier for account emails. Logs the link carrying the token."""

    def __init__(self, frontend_url: str) -> None:
        self._frontend_url = frontend_url.rstrip("/")

    async def send_verification_email(self, email: str, name: str, token: str) -> None:
        log.info(
            "verification_email_link",
            email=email,
            url=f"{self._frontend_url}/verify-email?token={token}",
        )

    async def send_password_reset(self, email: str, name: str, token: str) -> None:
        log.info(
            "password_reset_link",
            email=email,
            url=f"{self._frontend_url}/reset-password?token={token}",
        )

    async def send_email_change(self, new_email: str, name: str, token: str) -> None:
        log.info(
            "email_change_link",
            email=new_email,
            url=f"{self._frontend_url}/confirm-email-change?token={token}",
        )
