"""DB-backed team member and invitation repositories."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from feedpulse.core.exceptions import ConflictError
from feedpulse.core.interfaces import BaseTeamInvitationRepository, BaseTeamMemberRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import MemberRole, TeamInvitation, TeamMember

log = get_logger(__name__)


class TeamMemberRepository(BaseTeamMemberRepository):
    """Async PostgreSQL-backed membership storage."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_id(self, team_member_id: str) -> TeamMember | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM team_members WHERE team_member_id = :tmid"),
                {"tmid": team_member_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_member(r)

    async def find_by_owner(self, owner_id: str) -> list[TeamMember]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM team_members WHERE owner_id = :oid "
                    "ORDER BY invited_at"
                ),
                {"oid": owner_id},
            )
            return [self._row_to_member(r) for r in result.mappings().all()]

    async def find_by_member_not_owner(self, member_id: str) -> list[TeamMember]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM team_members "
                    "WHERE member_id = :mid AND owner_id <> :mid "
                    "AND accepted_at IS NOT NULL "
                    "ORDER BY accepted_at"
                ),
                {"mid": member_id},
            )
            return [self._row_to_member(r) for r in result.mappings().all()]

    async def find_by_member_and_owner(
        self, member_id: str, owner_id: str
    ) -> TeamMember | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    "SELECT * FROM team_members "
                    "WHERE member_id = :mid AND owner_id = :oid"
                ),
                {"mid": member_id, "oid": owner_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_member(r)

    async def create(self, member: TeamMember) -> TeamMember:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO team_members
                            (team_member_id, owner_id, member_id, role,
                             invited_by, invited_at, accepted_at)
                        VALUES
                            (:tmid, :oid, :mid, :role, :by, :invited, :accepted)
                        """
                    ),
                    {
                        "tmid": member.team_member_id,
                        "oid": member.owner_id,
                        "mid": member.member_id,
                        "role": member.role.value,
                        "by": member.invited_by,
                        "invited": member.invited_at,
                        "accepted": member.accepted_at,
                    },
                )
        except IntegrityError as exc:
            # Either the (owner, member) pair or the single-external-membership index.
            raise ConflictError(
                "Account already belongs to an organization",
                {"member_id": member.member_id},
            ) from exc

        log.info(
            "team_member_created",
            owner_id=member.owner_id,
            member_id=member.member_id,
            role=member.role.value,
        )
        return member

    async def update(self, member: TeamMember) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    "UPDATE team_members SET role = :role, accepted_at = :accepted "
                    "WHERE team_member_id = :tmid"
                ),
                {
                    "role": member.role.value,
                    "accepted": member.accepted_at,
                    "tmid": member.team_member_id,
                },
            )

    async def delete(self, team_member_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text("DELETE FROM team_members WHERE team_member_id = :tmid"),
                {"tmid": team_member_id},
            )

    @staticmethod
    def _row_to_member(r: object) -> TeamMember:
        """Convert a DB row mapping to a TeamMember dataclass."""
        return TeamMember(
            team_member_id=r["team_member_id"],  # type: ignore[index]
            owner_id=r["owner_id"],  # type: ignore[index]
            member_id=r["member_id"],  # type: ignore[index]
            role=MemberRole(r["role"]),  # type: ignore[index]
            invited_by=r["invited_by"],  # type: ignore[index]
            invited_at=r["invited_at"],  # type: ignore[index]
            accepted_at=r.get("accepted_at"),  # type: ignore[union-attr]
        )


class TeamInvitationRepository(BaseTeamInvitationRepository):
    """Async PostgreSQL-backed invitation storage."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_id(self, invitation_id: str) -> TeamInvitation | None:
        return await self._find_one(
            "SELECT * FROM team_invitations WHERE invitation_id = :iid",
            {"iid": invitation_id},
        )

    async def find_by_token(self, token: str) -> TeamInvitation | None:
        return await self._find_one(
            "SELECT * FROM team_invitations WHERE token = :token",
            {"token": token},
        )

    async def find_by_owner_and_email(
        self, owner_id: str, email: str
    ) -> TeamInvitation | None:
        return await self._find_one(
            "SELECT * FROM team_invitations "
            "WHERE owner_id = :oid AND email = :email "
            "ORDER BY created_at DESC LIMIT 1",
            {"oid": owner_id, "email": email},
        )

    async def find_pending_by_owner(
        self, owner_id: str, now: datetime
    ) -> list[TeamInvitation]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM team_invitations "
                    "WHERE owner_id = :oid AND accepted_at IS NULL AND expires_at > :now "
                    "ORDER BY created_at"
                ),
                {"oid": owner_id, "now": now},
            )
            return [self._row_to_invitation(r) for r in result.mappings().all()]

    async def find_expired(self, now: datetime) -> list[TeamInvitation]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM team_invitations "
                    "WHERE accepted_at IS NULL AND expires_at <= :now "
                    "ORDER BY created_at"
                ),
                {"now": now},
            )
            return [self._row_to_invitation(r) for r in result.mappings().all()]

    async def create(self, invitation: TeamInvitation) -> TeamInvitation:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO team_invitations
                        (invitation_id, owner_id, email, role, token,
                         invited_by, created_at, expires_at, accepted_at)
                    VALUES
                        (:iid, :oid, :email, :role, :token,
                         :by, :created, :expires, NULL)
                    """
                ),
                {
                    "iid": invitation.invitation_id,
                    "oid": invitation.owner_id,
                    "email": invitation.email,
                    "role": invitation.role.value,
                    "token": invitation.token,
                    "by": invitation.invited_by,
                    "created": invitation.created_at,
                    "expires": invitation.expires_at,
                },
            )
        return invitation

    async def mark_accepted(self, invitation_id: str, at: datetime) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "UPDATE team_invitations SET accepted_at = :at "
                    "WHERE invitation_id = :iid AND accepted_at IS NULL"
                ),
                {"at": at, "iid": invitation_id},
            )
            return bool(result.rowcount)

    async def delete(self, invitation_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text("DELETE FROM team_invitations WHERE invitation_id = :iid"),
                {"iid": invitation_id},
            )

    async def _find_one(self, query: str, params: dict[str, object]) -> TeamInvitation | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(text(query), params)
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_invitation(r)

    @staticmethod
    def _row_to_invitation(r: object) -> TeamInvitation:
        """Convert a DB row mapping to a TeamInvitation dataclass."""
        return TeamInvitation(
            invitation_id=r["invitation_id"],  # type: ignore[index]
            owner_id=r["owner_id"],  # type: ignore[index]
            email=r["email"],  # type: ignore[index]
            role=MemberRole(r["role"]),  # type: ignore[index]
            token=r["token"],  # type: ignore[index]
            invited_by=r["invited_by"],  # type: ignore[index]
            created_at=r["created_at"],  # type: ignore[index]
            expires_at=r["expires_at"],  # type: ignore[index]
            accepted_at=r.get("accepted_at"),  # type: ignore[union-attr]
        )
