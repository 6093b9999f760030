"""Team membership — tenant resolution for invited collaborators and invitation lifecycle.

An account always owns its own resource space. Accepting an invitation
grants it a role inside exactly one other account's space; while that grant
exists every request it makes is resolved against the owner's tenant.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

from feedpulse.core.constants import (
    DEFAULT_INVITATION_EXPIRY_DAYS,
    INVITATION_TOKEN_BYTES,
)
from feedpulse.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvitationError,
    NotFoundError,
    ValidationError,
)
from feedpulse.core.interfaces import (
    BaseAccountRepository,
    BaseInvitationNotifier,
    BaseTeamInvitationRepository,
    BaseTeamMemberRepository,
)
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    Claims,
    MemberRole,
    TeamInvitation,
    TeamMember,
    TenantContext,
    parse_role,
    utcnow,
)

log = get_logger(__name__)

DEFAULT_ORGANIZATION_NAME = "FeedPulse"


def generate_invitation_token() -> str:
    """Unguessable single-use secret (hex of 32 random bytes)."""
    return secrets.token_hex(INVITATION_TOKEN_BYTES)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class TeamResolver:
    """Maps an authenticating identity to the tenant its requests operate on.

    Nothing here is cached: membership and role are looked up on every call
    so that removals and role changes apply to the very next request.
    """

    def __init__(self, team_members: BaseTeamMemberRepository) -> None:
        self._team_members = team_members

    async def resolve_membership(self, identity_id: str) -> TeamMember | None:
        """Return the accepted membership of ``identity_id`` in another account, if any."""
        rows = await self._team_members.find_by_member_not_owner(identity_id)
        qualifying = [
            m for m in rows
            if m.owner_id != identity_id
            and m.member_id == identity_id
            and m.accepted_at is not None
        ]
        if not qualifying:
            return None

        if len(qualifying) > 1:
            # Only one external organization per identity is supported.
            log.warning(
                "multiple_external_memberships",
                member_id=identity_id,
                owners=[m.owner_id for m in qualifying],
                using=qualifying[0].owner_id,
            )
        return qualifying[0]

    async def resource_tenant_for(self, identity_id: str) -> tuple[str, MemberRole]:
        """(tenant id, role) for ``identity_id``; itself as Owner when not delegated."""
        membership = await self.resolve_membership(identity_id)
        if membership is None:
            return identity_id, MemberRole.OWNER

        log.debug(
            "team_membership_resolved",
            member_id=identity_id,
            owner_id=membership.owner_id,
            role=membership.role.value,
        )
        return membership.owner_id, membership.role

    async def resolve_context(self, claims: Claims) -> TenantContext:
        personal_id = claims.member_id
        tenant_id, role = await self.resource_tenant_for(personal_id)
        return TenantContext(
            personal_account_id=personal_id,
            resource_account_id=tenant_id,
            role=role,
            is_team_member=tenant_id != personal_id,
            claims=claims,
        )


class TeamService:
    """Invite, accept, re-role and remove team members of an owner account."""

    def __init__(
        self,
        team_members: BaseTeamMemberRepository,
        invitations: BaseTeamInvitationRepository,
        accounts: BaseAccountRepository,
        notifier: BaseInvitationNotifier | None = None,
        invitation_expiry_days: int = DEFAULT_INVITATION_EXPIRY_DAYS,
    ) -> None:
        self._team_members = team_members
        self._invitations = invitations
        self._accounts = accounts
        self._notifier = notifier
        self._expiry = timedelta(days=invitation_expiry_days)

    # ── Members ──────────────────────────────────────────────────

    async def list_members(self, owner_id: str) -> list[TeamMember]:
        return await self._team_members.find_by_owner(owner_id)

    async def get_member(self, owner_id: str, team_member_id: str) -> TeamMember:
        member = await self._team_members.find_by_id(team_member_id)
        if member is None or member.owner_id != owner_id:
            raise NotFoundError("Member not found", {"team_member_id": team_member_id})
        return member

    async def update_role(
        self, owner_id: str, team_member_id: str, new_role: MemberRole | str
    ) -> TeamMember:
        role = parse_role(new_role)
        member = await self.get_member(owner_id, team_member_id)

        if member.role == MemberRole.OWNER or role == MemberRole.OWNER:
            raise AuthorizationError("Cannot change owner role")

        old_role = member.role
        member.role = role
        await self._team_members.update(member)
        log.info(
            "team_member_role_updated",
            owner_id=owner_id,
            team_member_id=team_member_id,
            old=old_role.value,
            new=role.value,
        )
        return member

    async def remove_member(self, owner_id: str, team_member_id: str) -> TeamMember:
        member = await self.get_member(owner_id, team_member_id)
        if member.role == MemberRole.OWNER:
            raise AuthorizationError("Cannot remove owner")

        await self._team_members.delete(member.team_member_id)
        log.info("team_member_removed", owner_id=owner_id, member_id=member.member_id)
        return member

    # ── Invitations ──────────────────────────────────────────────

    async def invite_member(
        self,
        owner_id: str,
        inviter_id: str,
        email: str,
        role: MemberRole | str,
        now: datetime | None = None,
    ) -> TeamInvitation:
        role = parse_role(role)
        if role == MemberRole.OWNER:
            raise AuthorizationError("Cannot invite another owner")

        now = now or utcnow()
        email = normalize_email(email)

        existing_account = await self._accounts.find_by_email(email)
        if existing_account is not None:
            existing_member = await self._team_members.find_by_member_and_owner(
                existing_account.account_id, owner_id
            )
            if existing_member is not None:
                raise ConflictError("User is already a team member", {"email": email})

        existing_invite = await self._invitations.find_by_owner_and_email(owner_id, email)
        if existing_invite is not None and existing_invite.is_valid(now):
            raise ConflictError("Invitation already sent to this email", {"email": email})

        invitation = TeamInvitation(
            owner_id=owner_id,
            email=email,
            role=role,
            token=generate_invitation_token(),
            invited_by=inviter_id,
            created_at=now,
            expires_at=now + self._expiry,
        )
        await self._invitations.create(invitation)
        log.info(
            "team_invitation_created",
            owner_id=owner_id,
            invitation_id=invitation.invitation_id,
            role=role.value,
        )

        try:
            await self._notify(invitation)
        except Exception as exc:
            log.error(
                "team_invitation_notify_failed",
                invitation_id=invitation.invitation_id,
                error=str(exc),
            )
        return invitation

    async def resend_invitation(
        self, owner_id: str, invitation_id: str, now: datetime | None = None
    ) -> TeamInvitation:
        invitation = await self._owned_invitation(owner_id, invitation_id)
        if not invitation.is_valid(now):
            raise InvitationError("Invitation is no longer valid")

        await self._notify(invitation)
        log.info("team_invitation_resent", invitation_id=invitation_id)
        return invitation

    async def cancel_invitation(self, owner_id: str, invitation_id: str) -> TeamInvitation:
        """Withdraw a pending invitation. Accepted ones are managed as members instead."""
        invitation = await self._owned_invitation(owner_id, invitation_id)
        if invitation.is_accepted:
            raise InvitationError("Invitation was already accepted")
        await self._invitations.delete(invitation.invitation_id)
        log.info("team_invitation_cancelled", invitation_id=invitation_id)
        return invitation

    async def purge_expired_invitations(
        self, now: datetime | None = None
    ) -> list[TeamInvitation]:
        """Delete unaccepted invitations past their expiry and return them."""
        expired = await self._invitations.find_expired(now or utcnow())
        for invitation in expired:
            await self._invitations.delete(invitation.invitation_id)
        if expired:
            log.info("team_invitations_expired", count=len(expired))
        return expired

    async def list_pending_invitations(
        self, owner_id: str, now: datetime | None = None
    ) -> list[TeamInvitation]:
        return await self._invitations.find_pending_by_owner(owner_id, now or utcnow())

    async def get_invitation_by_token(
        self, token: str, now: datetime | None = None
    ) -> TeamInvitation:
        invitation = await self._invitations.find_by_token(token)
        if invitation is None:
            raise InvitationError("Invalid or expired invitation token")
        if not invitation.is_valid(now):
            raise InvitationError("This invitation has expired")
        return invitation

    async def accept_invitation(
        self, token: str, member_account_id: str, now: datetime | None = None
    ) -> TeamMember:
        """Redeem an invitation into a live membership. Each token works once."""
        now = now or utcnow()
        invitation = await self._invitations.find_by_token(token)
        if invitation is None:
            raise InvitationError("Invalid invitation token")
        if not invitation.is_valid(now):
            raise InvitationError("Invitation has expired or was already used")

        account = await self._accounts.find_by_id(member_account_id)
        if account is None:
            raise NotFoundError("Account not found", {"account_id": member_account_id})
        if normalize_email(account.email) != invitation.email:
            raise InvitationError("Invitation email does not match account email")
        if account.account_id == invitation.owner_id:
            raise ValidationError("Cannot join your own organization")

        existing = await self._team_members.find_by_member_and_owner(
            member_account_id, invitation.owner_id
        )
        if existing is None:
            others = await self._team_members.find_by_member_not_owner(member_account_id)
            if any(m.owner_id != invitation.owner_id for m in others):
                raise ConflictError("Account already belongs to another organization")

        if not await self._invitations.mark_accepted(invitation.invitation_id, now):
            raise InvitationError("Invitation has expired or was already used")

        if existing is not None:
            log.info(
                "team_invitation_accepted_existing_member",
                owner_id=invitation.owner_id,
                member_id=member_account_id,
            )
            return existing

        member = TeamMember(
            owner_id=invitation.owner_id,
            member_id=member_account_id,
            role=invitation.role,
            invited_by=invitation.invited_by,
            invited_at=invitation.created_at,
            accepted_at=now,
        )
        await self._team_members.create(member)
        log.info(
            "team_invitation_accepted",
            owner_id=invitation.owner_id,
            member_id=member_account_id,
            role=invitation.role.value,
        )
        return member

    # ── Internals ────────────────────────────────────────────────

    async def _owned_invitation(self, owner_id: str, invitation_id: str) -> TeamInvitation:
        invitation = await self._invitations.find_by_id(invitation_id)
        if invitation is None:
            raise NotFoundError("Invitation not found", {"invitation_id": invitation_id})
        if invitation.owner_id != owner_id:
            raise AuthorizationError("Cannot manage an invitation from another account")
        return invitation

    async def _notify(self, invitation: TeamInvitation) -> None:
        if self._notifier is None:
            log.debug("team_invitation_notify_skipped", invitation_id=invitation.invitation_id)
            return

        owner = await self._accounts.find_by_id(invitation.owner_id)
        organization_name = owner.name if owner and owner.name else DEFAULT_ORGANIZATION_NAME
        await self._notifier.send_team_invite(
            invitation.email, invitation.token, organization_name
        )
