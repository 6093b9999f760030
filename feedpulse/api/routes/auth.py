"""Authentication routes — register, login, email tokens, current identity, deactivation."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Response, status

from feedpulse.api.container import ServiceContainer, get_container
from feedpulse.api.deps import get_tenant_context
from feedpulse.api.middleware import require_bearer_token
from feedpulse.api.models.schemas import (
    AccountResponse,
    AccountTokenRequest,
    DeactivationResponse,
    EmailChangeRequest,
    EmailRequest,
    FeaturesOut,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordResetConfirm,
    ProfileUpdate,
    RegisterRequest,
    TokenResponse,
)
from feedpulse.core.constants import (
    MSG_PASSWORD_RESET_SENT,
    MSG_UNAUTHORIZED,
    MSG_VERIFICATION_SENT,
)
from feedpulse.core.exceptions import AuthenticationError, FeedPulseError
from feedpulse.core.logging import get_logger
from feedpulse.core.types import TenantContext

log = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    container: ServiceContainer = Depends(get_container),
) -> AccountResponse:
    account = await container.accounts.register(
        email=body.email,
        password=body.password,
        name=body.name,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return AccountResponse.from_account(account)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    container: ServiceContainer = Depends(get_container),
) -> TokenResponse:
    token, account = await container.accounts.login(body.email, body.password)
    log.info("login_success", account_id=account.account_id)
    return TokenResponse(
        access_token=token,
        expires_in=container.token_issuer.expires_in,
        account=AccountResponse.from_account(account),
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    token: str = Depends(require_bearer_token),
    container: ServiceContainer = Depends(get_container),
) -> TokenResponse:
    """Exchange a valid token for a fresh one reflecting current role and plan."""
    new_token = await container.token_issuer.refresh_token(token)
    return TokenResponse(access_token=new_token, expires_in=container.token_issuer.expires_in)


@router.get("/me", response_model=MeResponse)
async def get_me(
    context: TenantContext = Depends(get_tenant_context),
) -> MeResponse:
    """Return the caller's identity and the tenant it currently acts for."""
    claims = context.claims
    if claims is None:
        raise AuthenticationError(MSG_UNAUTHORIZED)
    return MeResponse(
        member_id=context.personal_account_id,
        tenant_id=context.resource_account_id,
        name=claims.name,
        email=claims.email,
        role=context.role.value,
        is_team_member=context.is_team_member,
        features=FeaturesOut.from_snapshot(claims.features),
    )


@router.patch("/me", response_model=AccountResponse)
async def update_me(
    body: ProfileUpdate,
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> AccountResponse:
    changes = body.model_dump(exclude_none=True)
    account = await container.accounts.update_profile(context.personal_account_id, **changes)
    return AccountResponse.from_account(account)


@router.post("/deactivation", response_model=DeactivationResponse)
async def request_deactivation(
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> DeactivationResponse:
    account = await container.accounts.request_deactivation(context.personal_account_id)
    requested_at = account.deactivation_requested_at
    if requested_at is None:
        raise FeedPulseError("Deactivation request was not recorded")
    grace = timedelta(days=container.accounts.deactivation_grace_days)
    return DeactivationResponse(requested_at=requested_at, deactivate_on=requested_at + grace)


@router.delete("/deactivation", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_deactivation(
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    await container.accounts.cancel_deactivation(context.personal_account_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/verify-email", response_model=AccountResponse)
async def verify_email(
    body: AccountTokenRequest,
    container: ServiceContainer = Depends(get_container),
) -> AccountResponse:
    """Redeem the mailed verification token. Each token works once."""
    account = await container.accounts.verify_email(body.token)
    return AccountResponse.from_account(account)


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resend_verification(
    body: EmailRequest,
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    await container.accounts.resend_verification_email(body.email)
    return MessageResponse(message=MSG_VERIFICATION_SENT)


@router.post(
    "/password-reset",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_password_reset(
    body: EmailRequest,
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    """Answers the same way whether or not the email is registered."""
    await container.accounts.request_password_reset(body.email)
    return MessageResponse(message=MSG_PASSWORD_RESET_SENT)


@router.post("/password-reset/confirm", response_model=MessageResponse)
async def confirm_password_reset(
    body: PasswordResetConfirm,
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    await container.accounts.reset_password(body.token, body.password)
    return MessageResponse(message="Password has been reset")


@router.post(
    "/email-change",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_email_change(
    body: EmailChangeRequest,
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> MessageResponse:
    await container.accounts.request_email_change(context.personal_account_id, body.new_email)
    return MessageResponse(message="Confirmation sent to the new email address")


@router.post("/email-change/confirm", response_model=TokenResponse)
async def confirm_email_change(
    body: AccountTokenRequest,
    container: ServiceContainer = Depends(get_container),
) -> TokenResponse:
    token, account = await container.accounts.confirm_email_change(body.token)
    return TokenResponse(
        access_token=token,
        expires_in=container.token_issuer.expires_in,
        account=AccountResponse.from_account(account),
    )
