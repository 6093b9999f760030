"""Team routes — members, invitations and invitation acceptance.

All member and invitation operations act on the caller's resource tenant,
never on its personal account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status

from feedpulse.api.container import ServiceContainer, get_container
from feedpulse.api.deps import (
    check_resource_limit,
    get_tenant_context,
    require_role,
    track_usage_after_success,
)
from feedpulse.api.models.schemas import (
    AcceptInviteRequest,
    InvitationOut,
    InviteRequest,
    RoleUpdate,
    TeamMemberOut,
)
from feedpulse.core.constants import STATE_RESOURCE_ID
from feedpulse.core.types import MemberRole, ResourceType, TenantContext, UsageEventType

router = APIRouter(prefix="/team", tags=["team"])


# ── Members ───────────────────────────────────────────────────────


@router.get("/members", response_model=list[TeamMemberOut])
async def list_members(
    context: TenantContext = Depends(require_role(MemberRole.VIEWER)),
    container: ServiceContainer = Depends(get_container),
) -> list[TeamMemberOut]:
    members = await container.team.list_members(context.resource_account_id)
    return [TeamMemberOut.from_member(m) for m in members]


@router.post(
    "/members/invite",
    response_model=InvitationOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(require_role(MemberRole.ADMIN)),
        Depends(check_resource_limit(ResourceType.TEAM_MEMBER)),
        Depends(track_usage_after_success()),
    ],
)
async def invite_member(
    body: InviteRequest,
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> InvitationOut:
    invitation = await container.team.invite_member(
        owner_id=context.resource_account_id,
        inviter_id=context.personal_account_id,
        email=body.email,
        role=body.role,
    )
    setattr(request.state, STATE_RESOURCE_ID, invitation.invitation_id)
    return InvitationOut.from_invitation(invitation)


@router.put("/members/{team_member_id}/role", response_model=TeamMemberOut)
async def update_member_role(
    team_member_id: str,
    body: RoleUpdate,
    context: TenantContext = Depends(require_role(MemberRole.ADMIN)),
    container: ServiceContainer = Depends(get_container),
) -> TeamMemberOut:
    member = await container.team.update_role(
        context.resource_account_id, team_member_id, body.role
    )
    return TeamMemberOut.from_member(member)


@router.delete(
    "/members/{team_member_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[
        Depends(
            track_usage_after_success(
                ResourceType.TEAM_MEMBER, delta=-1, event_type=UsageEventType.DELETE
            )
        ),
    ],
)
async def remove_member(
    team_member_id: str,
    request: Request,
    context: TenantContext = Depends(require_role(MemberRole.ADMIN)),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    member = await container.team.remove_member(context.resource_account_id, team_member_id)
    setattr(request.state, STATE_RESOURCE_ID, member.team_member_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Invitations ───────────────────────────────────────────────────


@router.get("/invitations", response_model=list[InvitationOut])
async def list_invitations(
    context: TenantContext = Depends(require_role(MemberRole.ADMIN)),
    container: ServiceContainer = Depends(get_container),
) -> list[InvitationOut]:
    invitations = await container.team.list_pending_invitations(context.resource_account_id)
    return [InvitationOut.from_invitation(i) for i in invitations]


@router.delete(
    "/invitations/{invitation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[
        Depends(
            track_usage_after_success(
                ResourceType.TEAM_MEMBER, delta=-1, event_type=UsageEventType.DELETE
            )
        ),
    ],
)
async def cancel_invitation(
    invitation_id: str,
    request: Request,
    context: TenantContext = Depends(require_role(MemberRole.ADMIN)),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    """Withdraw a pending invitation and hand back the team-member unit it held."""
    invitation = await container.team.cancel_invitation(
        context.resource_account_id, invitation_id
    )
    setattr(request.state, STATE_RESOURCE_ID, invitation.invitation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invitations/{invitation_id}/resend", response_model=InvitationOut)
async def resend_invitation(
    invitation_id: str,
    context: TenantContext = Depends(require_role(MemberRole.ADMIN)),
    container: ServiceContainer = Depends(get_container),
) -> InvitationOut:
    invitation = await container.team.resend_invitation(
        context.resource_account_id, invitation_id
    )
    return InvitationOut.from_invitation(invitation)


@router.post("/accept-invite", response_model=TeamMemberOut)
async def accept_invite(
    body: AcceptInviteRequest,
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> TeamMemberOut:
    """Join the inviting organization. Refresh the token afterwards to act in it."""
    member = await container.team.accept_invitation(body.token, context.personal_account_id)
    return TeamMemberOut.from_member(member)
