"""Usage accounting — per-period resource counters and the usage event log.

Counters are keyed by (subscription, billing period). Each increment is a
single atomic write against the period row, so concurrent updates from
different workers add up instead of overwriting each other.
"""

from __future__ import annotations

from datetime import datetime

from feedpulse.core.exceptions import NotFoundError
from feedpulse.core.interfaces import BaseSubscriptionRepository, BaseUsageRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    ResourceType,
    Subscription,
    SubscriptionUsage,
    UsageEvent,
    parse_resource_type,
    utcnow,
)

log = get_logger(__name__)


class UsageAccountant:
    """Tracks consumption against the current billing period of a subscription."""

    def __init__(
        self,
        subscriptions: BaseSubscriptionRepository,
        usage: BaseUsageRepository,
    ) -> None:
        self._subscriptions = subscriptions
        self._usage = usage

    async def track_usage(
        self,
        subscription_id: str,
        resource_type: ResourceType | str,
        delta: int = 1,
    ) -> None:
        """Add ``delta`` to the resource counter of the current period, creating the row if needed."""
        resource = parse_resource_type(resource_type)
        subscription = await self._get_subscription(subscription_id)

        row = await self._period_row(
            subscription_id,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        await self._usage.increment(row.usage_id, resource, delta, utcnow())

        log.debug(
            "usage_tracked",
            subscription_id=subscription_id,
            resource_type=resource.value,
            delta=delta,
        )

    async def record_usage_event(self, event: UsageEvent) -> UsageEvent:
        """Append an audit event. The timestamp is always assigned here."""
        event.created_at = utcnow()
        await self._usage.create_event(event)
        log.debug(
            "usage_event_recorded",
            subscription_id=event.subscription_id,
            event_type=event.event_type.value,
            resource_type=event.resource_type.value,
        )
        return event

    async def get_current_usage(self, subscription_id: str) -> SubscriptionUsage:
        """Usage for the current period; an all-zero row when nothing was recorded yet."""
        subscription = await self._get_subscription(subscription_id)
        row = await self._usage.find_by_subscription_and_period(
            subscription_id,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        if row is None:
            return SubscriptionUsage(
                subscription_id=subscription_id,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
            )
        return row

    async def get_usage_for_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> SubscriptionUsage | None:
        return await self._usage.find_by_subscription_and_period(
            subscription_id, period_start, period_end
        )

    async def list_usage_history(self, subscription_id: str) -> list[SubscriptionUsage]:
        return await self._usage.find_by_subscription(subscription_id)

    async def list_usage_events(
        self, subscription_id: str, limit: int = 100
    ) -> list[UsageEvent]:
        return await self._usage.find_events_by_subscription(subscription_id, limit)

    async def initialize_usage_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> bool:
        """Create the usage row for a period. Returns False if it already existed."""
        candidate = SubscriptionUsage(
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
        )
        stored = await self._usage.create_for_period(candidate)
        created = stored.usage_id == candidate.usage_id
        if created:
            log.info(
                "usage_period_initialized",
                subscription_id=subscription_id,
                period_start=period_start.isoformat(),
                period_end=period_end.isoformat(),
            )
        return created

    async def reset_monthly_usage(self, now: datetime | None = None) -> int:
        """Open the current-period row of every active subscription.

        Counters of a new period start at zero, so opening the row is the
        reset. Running it twice for the same period does nothing. Advancing
        the subscription period itself is the billing integration's job.
        """
        now = now or utcnow()
        created = 0
        for subscription in await self._subscriptions.list_active():
            if not subscription.is_active(now):
                continue
            try:
                if await self.initialize_usage_period(
                    subscription.subscription_id,
                    subscription.current_period_start,
                    subscription.current_period_end,
                ):
                    created += 1
            except Exception as exc:
                log.error(
                    "usage_period_initialize_failed",
                    subscription_id=subscription.subscription_id,
                    error=str(exc),
                )

        log.info("monthly_usage_reset", periods_created=created)
        return created

    async def _get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._subscriptions.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", {"subscription_id": subscription_id})
        return subscription

    async def _period_row(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> SubscriptionUsage:
        row = await self._usage.find_by_subscription_and_period(
            subscription_id, period_start, period_end
        )
        if row is not None:
            return row
        return await self._usage.create_for_period(
            SubscriptionUsage(
                subscription_id=subscription_id,
                period_start=period_start,
                period_end=period_end,
            )
        )
