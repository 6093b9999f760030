"""Quota enforcement — point-in-time plan limit checks for resource creation.

The check is advisory: it reads the counter for the current billing period
and compares it with the plan limit. It does not reserve a unit, so two
concurrent creations against the last remaining unit can both pass.
"""

from __future__ import annotations

from datetime import datetime

from feedpulse.core.constants import (
    MSG_NO_SUBSCRIPTION,
    MSG_SUBSCRIPTION_NOT_ACTIVE,
    MSG_SUBSCRIPTION_NOT_FOUND,
    UNLIMITED,
)
from feedpulse.core.exceptions import (
    FeatureNotAvailableError,
    QuotaExceededError,
    SubscriptionNotActiveError,
    SubscriptionRequiredError,
)
from feedpulse.core.interfaces import BaseSubscriptionRepository, BaseUsageRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    RESOURCE_DISPLAY_NAMES,
    QuotaDecision,
    ResourceType,
    Subscription,
    parse_resource_type,
    utcnow,
)

log = get_logger(__name__)


class QuotaGate:
    """Decides whether a subscription may add one more unit of a resource."""

    def __init__(
        self,
        subscriptions: BaseSubscriptionRepository,
        usage: BaseUsageRepository,
    ) -> None:
        self._subscriptions = subscriptions
        self._usage = usage

    async def can_add_resource(
        self,
        subscription_id: str,
        resource_type: ResourceType | str,
        now: datetime | None = None,
    ) -> QuotaDecision:
        resource = parse_resource_type(resource_type)

        subscription = await self._subscriptions.find_by_id(subscription_id)
        if subscription is None:
            return QuotaDecision(allowed=False, reason=MSG_SUBSCRIPTION_NOT_FOUND)
        if not subscription.is_active(now or utcnow()):
            return QuotaDecision(allowed=False, reason=MSG_SUBSCRIPTION_NOT_ACTIVE)

        limit = subscription.plan.limit_for(resource)
        current = await self._current_count(subscription, resource)

        if limit == UNLIMITED:
            return QuotaDecision(allowed=True, current=current, limit=limit)

        if current >= limit:
            reason = f"{RESOURCE_DISPLAY_NAMES[resource]} limit reached ({current}/{limit})"
            log.warning(
                "quota_exceeded",
                subscription_id=subscription_id,
                resource_type=resource.value,
                current=current,
                limit=limit,
                plan=subscription.plan.code,
            )
            return QuotaDecision(allowed=False, reason=reason, current=current, limit=limit)

        return QuotaDecision(allowed=True, current=current, limit=limit)

    async def enforce(
        self,
        subscription_id: str,
        resource_type: ResourceType | str,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Like ``can_add_resource`` but raises on denial."""
        decision = await self.can_add_resource(subscription_id, resource_type, now)
        if decision.allowed:
            return decision

        if decision.reason == MSG_SUBSCRIPTION_NOT_FOUND:
            raise SubscriptionRequiredError(decision.reason, {"subscription_id": subscription_id})
        if decision.reason == MSG_SUBSCRIPTION_NOT_ACTIVE:
            raise SubscriptionNotActiveError(decision.reason, {"subscription_id": subscription_id})

        raise QuotaExceededError(
            decision.reason,
            {
                "resource_type": str(getattr(resource_type, "value", resource_type)),
                "current_count": decision.current,
                "max_allowed": decision.limit,
            },
        )

    async def _current_count(self, subscription: Subscription, resource: ResourceType) -> int:
        row = await self._usage.find_by_subscription_and_period(
            subscription.subscription_id,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        if row is None:
            return 0
        return row.count_for(resource)


class SubscriptionService:
    """Looks up the subscription that governs a tenant."""

    def __init__(self, subscriptions: BaseSubscriptionRepository) -> None:
        self._subscriptions = subscriptions

    async def get_account_subscription(self, account_id: str) -> Subscription | None:
        return await self._subscriptions.find_by_account_id(account_id)

    async def require_active_subscription(
        self, account_id: str, now: datetime | None = None
    ) -> Subscription:
        subscription = await self._subscriptions.find_by_account_id(account_id)
        if subscription is None:
            raise SubscriptionRequiredError(MSG_NO_SUBSCRIPTION, {"account_id": account_id})
        if not subscription.is_active(now or utcnow()):
            raise SubscriptionNotActiveError(
                MSG_SUBSCRIPTION_NOT_ACTIVE,
                {"account_id": account_id, "status": subscription.status.value},
            )
        return subscription

    async def require_feature(
        self, account_id: str, flag: str, now: datetime | None = None
    ) -> Subscription:
        subscription = await self.require_active_subscription(account_id, now)
        if not subscription.plan.has_feature(flag):
            raise FeatureNotAvailableError(
                "This feature is not available in your current plan",
                {"feature": flag, "plan": subscription.plan.code},
            )
        return subscription
