"""Tests for TeamResolver and TeamService — tenant resolution and invitations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from feedpulse.api.container import Repositories
from feedpulse.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvitationError,
    NotFoundError,
    ValidationError,
)
from feedpulse.core.types import Account, Claims, MemberRole, TeamMember
from feedpulse.saas.team import (
    TeamResolver,
    TeamService,
    generate_invitation_token,
    normalize_email,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


async def _account(repos: Repositories, email: str, name: str = "") -> Account:
    account = Account(email=email, password_hash="x", name=name or email.split("@")[0])
    return await repos.accounts.create(account)


async def _grant(
    repos: Repositories, owner_id: str, member_id: str, role: MemberRole,
    accepted: bool = True,
) -> TeamMember:
    member = TeamMember(
        owner_id=owner_id, member_id=member_id, role=role, invited_by=owner_id,
        accepted_at=NOW if accepted else None,
    )
    return await repos.team_members.create(member)


def _service(repos: Repositories, notifier: AsyncMock | None = None) -> TeamService:
    return TeamService(repos.team_members, repos.invitations, repos.accounts,
                       notifier=notifier, invitation_expiry_days=7)


class TestHelpers:
    def test_token_is_64_hex_chars(self) -> None:
        token = generate_invitation_token()
        assert len(token) == 64
        int(token, 16)
        assert generate_invitation_token() != token

    def test_normalize_email(self) -> None:
        assert normalize_email("  Bob@Example.COM ") == "bob@example.com"


class TestTeamResolver:
    @pytest.mark.asyncio
    async def test_no_membership_resolves_to_self_as_owner(self, repos: Repositories) -> None:
        resolver = TeamResolver(repos.team_members)
        assert await resolver.resource_tenant_for("x") == ("x", MemberRole.OWNER)

    @pytest.mark.asyncio
    async def test_external_membership_delegates(self, repos: Repositories) -> None:
        await _grant(repos, "org", "m", MemberRole.MANAGER)
        resolver = TeamResolver(repos.team_members)
        assert await resolver.resource_tenant_for("m") == ("org", MemberRole.MANAGER)

    @pytest.mark.asyncio
    async def test_self_membership_ignored(self, repos: Repositories) -> None:
        await _grant(repos, "x", "x", MemberRole.VIEWER)
        resolver = TeamResolver(repos.team_members)
        assert await resolver.resource_tenant_for("x") == ("x", MemberRole.OWNER)

    @pytest.mark.asyncio
    async def test_unaccepted_membership_ignored(self, repos: Repositories) -> None:
        await _grant(repos, "org", "m", MemberRole.ADMIN, accepted=False)
        resolver = TeamResolver(repos.team_members)
        assert await resolver.resource_tenant_for("m") == ("m", MemberRole.OWNER)

    @pytest.mark.asyncio
    async def test_owner_is_unaffected_by_its_members(self, repos: Repositories) -> None:
        await _grant(repos, "org", "m", MemberRole.ADMIN)
        resolver = TeamResolver(repos.team_members)
        assert await resolver.resource_tenant_for("org") == ("org", MemberRole.OWNER)

    @pytest.mark.asyncio
    async def test_multiple_memberships_pick_first(self) -> None:
        rows = [
            TeamMember(owner_id="o1", member_id="m", role=MemberRole.VIEWER,
                       invited_by="o1", accepted_at=NOW),
            TeamMember(owner_id="o2", member_id="m", role=MemberRole.ADMIN,
                       invited_by="o2", accepted_at=NOW),
        ]
        repo = AsyncMock()
        repo.find_by_member_not_owner.return_value = rows
        resolver = TeamResolver(repo)
        assert await resolver.resource_tenant_for("m") == ("o1", MemberRole.VIEWER)

    @pytest.mark.asyncio
    async def test_context_uses_current_membership(self, repos: Repositories) -> None:
        claims = Claims(account_id="m", member_id="m", name="M", email="m@x.io",
                        role=MemberRole.OWNER)
        resolver = TeamResolver(repos.team_members)

        before = await resolver.resolve_context(claims)
        assert before.resource_account_id == "m"
        assert before.is_team_member is False

        grant = await _grant(repos, "org", "m", MemberRole.VIEWER)
        during = await resolver.resolve_context(claims)
        assert during.resource_account_id == "org"
        assert during.role == MemberRole.VIEWER
        assert during.is_team_member is True

        await repos.team_members.delete(grant.team_member_id)
        after = await resolver.resolve_context(claims)
        assert after.resource_account_id == "m"
        assert after.role == MemberRole.OWNER


class TestMembers:
    @pytest.mark.asyncio
    async def test_update_role(self, repos: Repositories) -> None:
        grant = await _grant(repos, "org", "m", MemberRole.VIEWER)
        updated = await _service(repos).update_role("org", grant.team_member_id, "admin")
        assert updated.role == MemberRole.ADMIN
        stored = await repos.team_members.find_by_id(grant.team_member_id)
        assert stored is not None and stored.role == MemberRole.ADMIN

    @pytest.mark.asyncio
    async def test_cannot_promote_to_owner(self, repos: Repositories) -> None:
        grant = await _grant(repos, "org", "m", MemberRole.ADMIN)
        with pytest.raises(AuthorizationError):
            await _service(repos).update_role("org", grant.team_member_id, MemberRole.OWNER)

    @pytest.mark.asyncio
    async def test_cannot_touch_owner_row(self, repos: Repositories) -> None:
        grant = await _grant(repos, "org", "org", MemberRole.OWNER)
        service = _service(repos)
        with pytest.raises(AuthorizationError, match="Cannot change owner role"):
            await service.update_role("org", grant.team_member_id, "VIEWER")
        with pytest.raises(AuthorizationError, match="Cannot remove owner"):
            await service.remove_member("org", grant.team_member_id)

    @pytest.mark.asyncio
    async def test_other_tenant_member_not_found(self, repos: Repositories) -> None:
        grant = await _grant(repos, "org", "m", MemberRole.VIEWER)
        with pytest.raises(NotFoundError):
            await _service(repos).remove_member("other-org", grant.team_member_id)

    @pytest.mark.asyncio
    async def test_remove_member(self, repos: Repositories) -> None:
        grant = await _grant(repos, "org", "m", MemberRole.VIEWER)
        removed = await _service(repos).remove_member("org", grant.team_member_id)
        assert removed.member_id == "m"
        assert await repos.team_members.find_by_owner("org") == []


class TestInvitations:
    @pytest.mark.asyncio
    async def test_invite_normalizes_and_notifies(self, repos: Repositories) -> None:
        owner = await _account(repos, "owner@x.io", name="Acme")
        notifier = AsyncMock()
        invitation = await _service(repos, notifier).invite_member(
            owner.account_id, owner.account_id, " New@X.io ", "manager", now=NOW
        )
        assert invitation.email == "new@x.io"
        assert invitation.role == MemberRole.MANAGER
        assert invitation.expires_at == NOW + timedelta(days=7)
        notifier.send_team_invite.assert_awaited_once_with(
            "new@x.io", invitation.token, "Acme"
        )

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_invite(self, repos: Repositories) -> None:
        notifier = AsyncMock()
        notifier.send_team_invite.side_effect = RuntimeError("smtp down")
        invitation = await _service(repos, notifier).invite_member("org", "org", "a@x.io", "VIEWER")
        assert await repos.invitations.find_by_id(invitation.invitation_id) is not None

    @pytest.mark.asyncio
    async def test_duplicate_pending_invite_conflicts(self, repos: Repositories) -> None:
        service = _service(repos)
        await service.invite_member("org", "org", "a@x.io", "VIEWER", now=NOW)
        with pytest.raises(ConflictError):
            await service.invite_member("org", "org", "A@x.io", "VIEWER", now=NOW)

    @pytest.mark.asyncio
    async def test_reinvite_after_expiry(self, repos: Repositories) -> None:
        service = _service(repos)
        await service.invite_member("org", "org", "a@x.io", "VIEWER", now=NOW)
        later = NOW + timedelta(days=8)
        again = await service.invite_member("org", "org", "a@x.io", "VIEWER", now=later)
        assert again.created_at == later

    @pytest.mark.asyncio
    async def test_invite_existing_member_conflicts(self, repos: Repositories) -> None:
        member = await _account(repos, "m@x.io")
        await _grant(repos, "org", member.account_id, MemberRole.VIEWER)
        with pytest.raises(ConflictError):
            await _service(repos).invite_member("org", "org", "m@x.io", "ADMIN")

    @pytest.mark.asyncio
    async def test_cannot_invite_owner(self, repos: Repositories) -> None:
        with pytest.raises(AuthorizationError):
            await _service(repos).invite_member("org", "org", "a@x.io", "OWNER")

    @pytest.mark.asyncio
    async def test_unknown_role_rejected(self, repos: Repositories) -> None:
        with pytest.raises(ValidationError):
            await _service(repos).invite_member("org", "org", "a@x.io", "ROOT")

    @pytest.mark.asyncio
    async def test_cancel_and_resend_are_tenant_scoped(self, repos: Repositories) -> None:
        service = _service(repos, AsyncMock())
        invitation = await service.invite_member("org", "org", "a@x.io", "VIEWER")

        with pytest.raises(AuthorizationError):
            await service.cancel_invitation("other-org", invitation.invitation_id)
        with pytest.raises(AuthorizationError):
            await service.resend_invitation("other-org", invitation.invitation_id)

        await service.resend_invitation("org", invitation.invitation_id)
        await service.cancel_invitation("org", invitation.invitation_id)
        assert await repos.invitations.find_by_token(invitation.token) is None

        with pytest.raises(NotFoundError):
            await service.cancel_invitation("org", invitation.invitation_id)

    @pytest.mark.asyncio
    async def test_cancel_refuses_accepted_invitation(self, repos: Repositories) -> None:
        service = _service(repos)
        member = await _account(repos, "a@x.io")
        invitation = await service.invite_member("org", "org", "a@x.io", "VIEWER")
        await service.accept_invitation(invitation.token, member.account_id)

        with pytest.raises(InvitationError):
            await service.cancel_invitation("org", invitation.invitation_id)

    @pytest.mark.asyncio
    async def test_purge_expired_invitations(self, repos: Repositories) -> None:
        service = _service(repos)
        old = await service.invite_member(
            "org", "org", "a@x.io", "VIEWER", now=NOW - timedelta(days=10)
        )
        fresh = await service.invite_member("org", "org", "b@x.io", "VIEWER", now=NOW)

        purged = await service.purge_expired_invitations(now=NOW)
        assert [i.invitation_id for i in purged] == [old.invitation_id]
        assert await repos.invitations.find_by_id(old.invitation_id) is None
        assert await repos.invitations.find_by_id(fresh.invitation_id) is not None
        assert await service.purge_expired_invitations(now=NOW) == []

    @pytest.mark.asyncio
    async def test_list_pending(self, repos: Repositories) -> None:
        service = _service(repos)
        await service.invite_member("org", "org", "a@x.io", "VIEWER", now=NOW)
        await service.invite_member("org", "org", "b@x.io", "VIEWER", now=NOW - timedelta(days=10))
        pending = await service.list_pending_invitations("org", now=NOW)
        assert [i.email for i in pending] == ["a@x.io"]

    @pytest.mark.asyncio
    async def test_get_by_token(self, repos: Repositories) -> None:
        service = _service(repos)
        invitation = await service.invite_member("org", "org", "a@x.io", "VIEWER", now=NOW)
        assert (await service.get_invitation_by_token(invitation.token, NOW)).email == "a@x.io"
        with pytest.raises(InvitationError):
            await service.get_invitation_by_token(invitation.token, NOW + timedelta(days=8))
        with pytest.raises(InvitationError):
            await service.get_invitation_by_token("nope")


class TestAcceptInvitation:
    @pytest.mark.asyncio
    async def test_accept_creates_membership(self, repos: Repositories) -> None:
        owner = await _account(repos, "owner@x.io")
        member = await _account(repos, "m@x.io")
        service = _service(repos)
        invitation = await service.invite_member(
            owner.account_id, owner.account_id, "m@x.io", "MANAGER", now=NOW
        )

        grant = await service.accept_invitation(invitation.token, member.account_id, now=NOW)
        assert grant.owner_id == owner.account_id
        assert grant.role == MemberRole.MANAGER
        assert grant.accepted_at == NOW

        resolver = TeamResolver(repos.team_members)
        assert await resolver.resource_tenant_for(member.account_id) == (
            owner.account_id, MemberRole.MANAGER,
        )

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, repos: Repositories) -> None:
        owner = await _account(repos, "owner@x.io")
        member = await _account(repos, "m@x.io")
        service = _service(repos)
        invitation = await service.invite_member(
            owner.account_id, owner.account_id, "m@x.io", "VIEWER", now=NOW
        )
        await service.accept_invitation(invitation.token, member.account_id, now=NOW)
        with pytest.raises(InvitationError):
            await service.accept_invitation(invitation.token, member.account_id, now=NOW)

    @pytest.mark.asyncio
    async def test_expired_token(self, repos: Repositories) -> None:
        member = await _account(repos, "m@x.io")
        service = _service(repos)
        invitation = await service.invite_member("org", "org", "m@x.io", "VIEWER", now=NOW)
        with pytest.raises(InvitationError):
            await service.accept_invitation(
                invitation.token, member.account_id, now=NOW + timedelta(days=8)
            )

    @pytest.mark.asyncio
    async def test_email_mismatch(self, repos: Repositories) -> None:
        intruder = await _account(repos, "intruder@x.io")
        service = _service(repos)
        invitation = await service.invite_member("org", "org", "m@x.io", "VIEWER", now=NOW)
        with pytest.raises(InvitationError):
            await service.accept_invitation(invitation.token, intruder.account_id, now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_token(self, repos: Repositories) -> None:
        member = await _account(repos, "m@x.io")
        with pytest.raises(InvitationError):
            await _service(repos).accept_invitation("nope", member.account_id)

    @pytest.mark.asyncio
    async def test_cannot_join_own_organization(self, repos: Repositories) -> None:
        owner = await _account(repos, "owner@x.io")
        service = _service(repos)
        invitation = await service.invite_member(
            owner.account_id, owner.account_id, "owner@x.io", "VIEWER", now=NOW
        )
        with pytest.raises(ValidationError):
            await service.accept_invitation(invitation.token, owner.account_id, now=NOW)

    @pytest.mark.asyncio
    async def test_second_organization_conflicts(self, repos: Repositories) -> None:
        member = await _account(repos, "m@x.io")
        await _grant(repos, "org-a", member.account_id, MemberRole.VIEWER)
        service = _service(repos)
        invitation = await service.invite_member("org-b", "org-b", "m@x.io", "VIEWER", now=NOW)

        with pytest.raises(ConflictError):
            await service.accept_invitation(invitation.token, member.account_id, now=NOW)
        # The invitation was not consumed.
        stored = await repos.invitations.find_by_token(invitation.token)
        assert stored is not None and stored.accepted_at is None
