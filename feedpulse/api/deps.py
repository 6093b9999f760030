"""FastAPI dependency injection — tenant context, role, subscription and quota guards.

Within one request the guards run in a fixed order: tenant resolution,
role check, subscription and quota check, handler, then usage tracking.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import Depends, Request, Response

from feedpulse.api.container import ServiceContainer, get_container
from feedpulse.api.middleware import get_current_claims
from feedpulse.core.constants import (
    STATE_RESOURCE_ID,
    STATE_SUBSCRIPTION,
    STATE_TENANT,
    STATE_TRACK_RESOURCE,
)
from feedpulse.core.exceptions import AuthorizationError
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    Claims,
    MemberRole,
    ResourceType,
    Subscription,
    TenantContext,
    UsageEventType,
    parse_resource_type,
)
from feedpulse.saas.dispatch import UsageJob
from feedpulse.saas.roles import authorize

log = get_logger(__name__)


# ── Tenant context ────────────────────────────────────────────────


async def get_tenant_context(
    request: Request,
    claims: Claims = Depends(get_current_claims),
    container: ServiceContainer = Depends(get_container),
) -> TenantContext:
    """Resolve personal vs. resource tenant for this request.

    Membership and role are looked up again on every request, so a removal
    or role change takes effect before the caller's token expires. Also
    verifies that the account is still active, preventing deactivated users
    from retaining access via unexpired tokens.
    """
    account = await container.repos.accounts.find_by_id(claims.member_id)
    if account is None or not account.is_active:
        raise AuthorizationError("Account deactivated")

    context = await container.team_resolver.resolve_context(claims)
    setattr(request.state, STATE_TENANT, context)
    return context


# ── Role ──────────────────────────────────────────────────────────


def require_role(min_role: MemberRole) -> Callable[..., Awaitable[TenantContext]]:
    """Dependency factory: 403 unless the caller's current role is at least ``min_role``."""

    async def _require_role(
        context: TenantContext = Depends(get_tenant_context),
    ) -> TenantContext:
        authorize(context.role, min_role)
        return context

    return _require_role


# ── Subscription & quota ──────────────────────────────────────────


async def require_active_subscription(
    request: Request,
    context: TenantContext = Depends(get_tenant_context),
    container: ServiceContainer = Depends(get_container),
) -> Subscription:
    """The tenant's active subscription; 402 when there is none."""
    subscription = await container.subscriptions.require_active_subscription(
        context.resource_account_id
    )
    setattr(request.state, STATE_SUBSCRIPTION, subscription)
    return subscription


def require_feature(flag: str) -> Callable[..., Awaitable[Subscription]]:
    async def _require_feature(
        request: Request,
        context: TenantContext = Depends(get_tenant_context),
        container: ServiceContainer = Depends(get_container),
    ) -> Subscription:
        subscription = await container.subscriptions.require_feature(
            context.resource_account_id, flag
        )
        setattr(request.state, STATE_SUBSCRIPTION, subscription)
        return subscription

    return _require_feature


def check_resource_limit(
    resource_type: ResourceType | str,
) -> Callable[..., Awaitable[Subscription]]:
    """Dependency factory: deny creation when the plan limit for ``resource_type`` is reached."""
    resource = parse_resource_type(resource_type)

    async def _check_resource_limit(
        request: Request,
        subscription: Subscription = Depends(require_active_subscription),
        container: ServiceContainer = Depends(get_container),
    ) -> Subscription:
        await container.quota.enforce(subscription.subscription_id, resource)
        setattr(request.state, STATE_TRACK_RESOURCE, resource)
        return subscription

    return _check_resource_limit


# ── Usage tracking ────────────────────────────────────────────────


def track_usage_after_success(
    resource_type: ResourceType | str | None = None,
    delta: int = 1,
    event_type: UsageEventType = UsageEventType.CREATE,
) -> Callable[..., AsyncIterator[None]]:
    """Dependency factory: enqueue a usage job once the handler has succeeded.

    Nothing is enqueued when the handler raises or sets an error status.
    The resource type defaults to the one stored by ``check_resource_limit``.
    Enqueueing never blocks and never fails the request.
    """
    explicit = parse_resource_type(resource_type) if resource_type is not None else None

    async def _track_usage_after_success(
        request: Request,
        response: Response,
        context: TenantContext = Depends(get_tenant_context),
        container: ServiceContainer = Depends(get_container),
    ) -> AsyncIterator[None]:
        yield

        if response.status_code is not None and response.status_code >= 400:
            return

        resource = explicit or getattr(request.state, STATE_TRACK_RESOURCE, None)
        if resource is None:
            log.warning("usage_tracking_skipped", reason="no_resource_type", path=request.url.path)
            return

        subscription = getattr(request.state, STATE_SUBSCRIPTION, None)
        if subscription is None:
            try:
                subscription = await container.subscriptions.get_account_subscription(
                    context.resource_account_id
                )
            except Exception as exc:
                log.error("usage_tracking_skipped", reason="subscription_lookup_failed",
                          tenant_id=context.resource_account_id, error=str(exc))
                return
        if subscription is None:
            log.debug("usage_tracking_skipped", reason="no_subscription",
                      tenant_id=context.resource_account_id)
            return

        container.dispatcher.submit(
            UsageJob(
                subscription_id=subscription.subscription_id,
                resource_type=resource,
                delta=delta,
                event_type=event_type,
                resource_id=getattr(request.state, STATE_RESOURCE_ID, None),
                metadata={"member_id": context.personal_account_id},
            )
        )

    return _track_usage_after_success
