"""Subscription routes — the tenant's plan and its current-period usage."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from feedpulse.api.container import ServiceContainer, get_container
from feedpulse.api.deps import require_active_subscription, require_role
from feedpulse.api.models.schemas import SubscriptionOut, UsageOut
from feedpulse.core.constants import MSG_NO_SUBSCRIPTION
from feedpulse.core.exceptions import SubscriptionRequiredError
from feedpulse.core.types import MemberRole, Subscription, TenantContext

router = APIRouter(prefix="/subscription", tags=["subscription"])


@router.get("", response_model=SubscriptionOut)
async def get_subscription(
    context: TenantContext = Depends(require_role(MemberRole.VIEWER)),
    container: ServiceContainer = Depends(get_container),
) -> SubscriptionOut:
    """Return the tenant's latest subscription, active or not."""
    subscription = await container.subscriptions.get_account_subscription(
        context.resource_account_id
    )
    if subscription is None:
        raise SubscriptionRequiredError(MSG_NO_SUBSCRIPTION)
    return SubscriptionOut.from_subscription(subscription)


@router.get("/usage", response_model=UsageOut)
async def get_usage(
    events: int = Query(default=20, ge=0, le=100),
    subscription: Subscription = Depends(require_active_subscription),
    container: ServiceContainer = Depends(get_container),
) -> UsageOut:
    """Current-period counters against plan limits, plus recent usage events."""
    usage = await container.usage.get_current_usage(subscription.subscription_id)
    recent = (
        await container.usage.list_usage_events(subscription.subscription_id, events)
        if events else []
    )
    return UsageOut.build(subscription, usage, recent)
