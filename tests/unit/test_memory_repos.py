"""Tests for the in-memory repositories' uniqueness and copy semantics."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from feedpulse.core.exceptions import ConflictError
from feedpulse.core.types import (
    Account,
    AccountToken,
    AccountTokenType,
    MemberRole,
    ResourceType,
    SubscriptionUsage,
    TeamInvitation,
    TeamMember,
)
from feedpulse.saas.memory import (
    InMemoryAccountRepository,
    InMemoryAccountTokenRepository,
    InMemoryTeamInvitationRepository,
    InMemoryTeamMemberRepository,
    InMemoryUsageRepository,
    LoggingAccountNotifier,
    LoggingInvitationNotifier,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _member(owner_id: str, member_id: str, accepted: bool = True) -> TeamMember:
    return TeamMember(owner_id=owner_id, member_id=member_id, role=MemberRole.VIEWER,
                      invited_by=owner_id, accepted_at=NOW if accepted else None)


class TestInMemoryAccountRepository:
    @pytest.mark.asyncio
    async def test_returns_copies(self) -> None:
        repo = InMemoryAccountRepository()
        account = await repo.create(Account(email="a@x.io", password_hash="h", name="A"))

        loaded = await repo.find_by_id(account.account_id)
        assert loaded is not None
        loaded.name = "changed"
        reloaded = await repo.find_by_id(account.account_id)
        assert reloaded is not None and reloaded.name == "A"

    @pytest.mark.asyncio
    async def test_duplicate_email(self) -> None:
        repo = InMemoryAccountRepository()
        await repo.create(Account(email="a@x.io", password_hash="h", name="A"))
        with pytest.raises(ConflictError):
            await repo.create(Account(email="a@x.io", password_hash="h", name="B"))

    @pytest.mark.asyncio
    async def test_pending_deactivation(self) -> None:
        repo = InMemoryAccountRepository()
        await repo.create(Account(email="a@x.io", password_hash="h", name="A",
                                  deactivation_requested_at=NOW))
        await repo.create(Account(email="b@x.io", password_hash="h", name="B"))
        pending = await repo.find_pending_deactivation()
        assert [a.email for a in pending] == ["a@x.io"]

    @pytest.mark.asyncio
    async def test_email_change_moves_index(self) -> None:
        repo = InMemoryAccountRepository()
        account = await repo.create(Account(email="old@x.io", password_hash="h", name="A"))
        account.email = "new@x.io"
        await repo.update(account)

        assert await repo.find_by_email("old@x.io") is None
        moved = await repo.find_by_email("new@x.io")
        assert moved is not None and moved.account_id == account.account_id

    @pytest.mark.asyncio
    async def test_email_change_to_taken_address(self) -> None:
        repo = InMemoryAccountRepository()
        await repo.create(Account(email="b@x.io", password_hash="h", name="B"))
        account = await repo.create(Account(email="a@x.io", password_hash="h", name="A"))
        account.email = "b@x.io"
        with pytest.raises(ConflictError):
            await repo.update(account)
        still = await repo.find_by_email("a@x.io")
        assert still is not None and still.account_id == account.account_id


class TestInMemoryAccountTokenRepository:
    def _token(self, token: str = "secret", account_id: str = "a1",
               token_type: AccountTokenType = AccountTokenType.EMAIL_VERIFICATION,
               ) -> AccountToken:
        return AccountToken(account_id=account_id, token=token, token_type=token_type,
                            expires_at=NOW + timedelta(hours=24))

    @pytest.mark.asyncio
    async def test_mark_used_once(self) -> None:
        repo = InMemoryAccountTokenRepository()
        record = await repo.create(self._token())
        assert await repo.mark_used(record.token_id, NOW) is True
        assert await repo.mark_used(record.token_id, NOW) is False
        assert await repo.mark_used("missing", NOW) is False

        stored = await repo.find_by_token("secret")
        assert stored is not None and not stored.is_valid(NOW)

    @pytest.mark.asyncio
    async def test_delete_by_account_and_type_keeps_others(self) -> None:
        repo = InMemoryAccountTokenRepository()
        await repo.create(self._token("verify"))
        await repo.create(self._token("reset", token_type=AccountTokenType.PASSWORD_RESET))
        await repo.create(self._token("other", account_id="a2"))

        await repo.delete_by_account_and_type("a1", AccountTokenType.EMAIL_VERIFICATION)
        assert await repo.find_by_token("verify") is None
        assert await repo.find_by_token("reset") is not None
        assert await repo.find_by_token("other") is not None

    @pytest.mark.asyncio
    async def test_token_collision(self) -> None:
        repo = InMemoryAccountTokenRepository()
        await repo.create(self._token())
        with pytest.raises(ConflictError):
            await repo.create(self._token())


class TestInMemoryTeamMemberRepository:
    @pytest.mark.asyncio
    async def test_duplicate_pair(self) -> None:
        repo = InMemoryTeamMemberRepository()
        await repo.create(_member("org", "m"))
        with pytest.raises(ConflictError):
            await repo.create(_member("org", "m"))

    @pytest.mark.asyncio
    async def test_single_external_membership(self) -> None:
        repo = InMemoryTeamMemberRepository()
        await repo.create(_member("org-a", "m"))
        with pytest.raises(ConflictError):
            await repo.create(_member("org-b", "m"))

    @pytest.mark.asyncio
    async def test_self_row_does_not_count_as_external(self) -> None:
        repo = InMemoryTeamMemberRepository()
        await repo.create(_member("m", "m"))
        await repo.create(_member("org", "m"))
        rows = await repo.find_by_member_not_owner("m")
        assert [r.owner_id for r in rows] == ["org"]

    @pytest.mark.asyncio
    async def test_member_not_owner_skips_unaccepted(self) -> None:
        repo = InMemoryTeamMemberRepository()
        await repo.create(_member("org", "m", accepted=False))
        assert await repo.find_by_member_not_owner("m") == []


class TestInMemoryTeamInvitationRepository:
    def _invitation(self, token: str = "tok") -> TeamInvitation:
        return TeamInvitation(owner_id="org", email="m@x.io", role=MemberRole.ADMIN,
                              token=token, invited_by="org",
                              expires_at=NOW + timedelta(days=7))

    @pytest.mark.asyncio
    async def test_mark_accepted_once(self) -> None:
        repo = InMemoryTeamInvitationRepository()
        invitation = await repo.create(self._invitation())
        assert await repo.mark_accepted(invitation.invitation_id, NOW) is True
        assert await repo.mark_accepted(invitation.invitation_id, NOW) is False
        assert await repo.mark_accepted("missing", NOW) is False

    @pytest.mark.asyncio
    async def test_token_collision(self) -> None:
        repo = InMemoryTeamInvitationRepository()
        await repo.create(self._invitation())
        with pytest.raises(ConflictError):
            await repo.create(self._invitation())

    @pytest.mark.asyncio
    async def test_find_expired_skips_accepted_and_live(self) -> None:
        repo = InMemoryTeamInvitationRepository()
        expired = await repo.create(self._invitation("old"))
        accepted = await repo.create(self._invitation("used"))
        await repo.mark_accepted(accepted.invitation_id, NOW)

        later = NOW + timedelta(days=8)
        live = await repo.create(TeamInvitation(
            owner_id="org", email="n@x.io", role=MemberRole.VIEWER, token="fresh",
            invited_by="org", expires_at=later + timedelta(days=7),
        ))
        rows = await repo.find_expired(later)
        assert expired.invitation_id in [r.invitation_id for r in rows]
        assert accepted.invitation_id not in [r.invitation_id for r in rows]
        assert live.invitation_id not in [r.invitation_id for r in rows]


class TestInMemoryUsageRepository:
    @pytest.mark.asyncio
    async def test_create_for_period_returns_existing(self) -> None:
        repo = InMemoryUsageRepository()
        end = NOW + timedelta(days=30)
        first = await repo.create_for_period(
            SubscriptionUsage(subscription_id="s1", period_start=NOW, period_end=end)
        )
        await repo.increment(first.usage_id, ResourceType.ORGANIZATION, 1, NOW)

        second = await repo.create_for_period(
            SubscriptionUsage(subscription_id="s1", period_start=NOW, period_end=end)
        )
        assert second.usage_id == first.usage_id
        assert second.organizations_count == 1

    @pytest.mark.asyncio
    async def test_decrement_floors_at_zero(self) -> None:
        repo = InMemoryUsageRepository()
        usage = await repo.create_for_period(SubscriptionUsage(
            subscription_id="s1", period_start=NOW, period_end=NOW + timedelta(days=30),
        ))
        await repo.increment(usage.usage_id, ResourceType.TEAM_MEMBER, -1, NOW)

        stored = await repo.find_by_subscription_and_period(
            "s1", NOW, NOW + timedelta(days=30)
        )
        assert stored is not None and stored.team_members_count == 0


class TestLoggingInvitationNotifier:
    @pytest.mark.asyncio
    async def test_send_does_not_raise(self) -> None:
        notifier = LoggingInvitationNotifier("http://localhost:3000/")
        await notifier.send_team_invite("m@x.io", "tok", "Acme")


class TestLoggingAccountNotifier:
    @pytest.mark.asyncio
    async def test_sends_do_not_raise(self) -> None:
        notifier = LoggingAccountNotifier("http://localhost:3000/")
        await notifier.send_verification_email("a@x.io", "A", "tok")
        await notifier.send_password_reset("a@x.io", "A", "tok")
        await notifier.send_email_change("new@x.io", "A", "tok")
