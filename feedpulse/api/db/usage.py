"""DB-backed usage counters and usage event log."""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from feedpulse.core.interfaces import BaseUsageRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import (
    RESOURCE_USAGE_FIELDS,
    ResourceType,
    SubscriptionUsage,
    UsageEvent,
    UsageEventType,
)

log = get_logger(__name__)


class UsageRepository(BaseUsageRepository):
    """Async PostgreSQL-backed usage storage."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_subscription_and_period(
        self, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> SubscriptionUsage | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    "SELECT * FROM subscription_usage "
                    "WHERE subscription_id = :sid "
                    "AND period_start = :start AND period_end = :end"
                ),
                {"sid": subscription_id, "start": period_start, "end": period_end},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_usage(r)

    async def create_for_period(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        """Insert the period row; a concurrent insert for the same period wins silently."""
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO subscription_usage
                        (usage_id, subscription_id, period_start, period_end,
                         organizations_count, locations_count, qr_codes_count,
                         feedbacks_count, team_members_count, last_updated_at)
                    VALUES
                        (:uid, :sid, :start, :end, :orgs, :locs, :qrs,
                         :feedbacks, :members, :updated)
                    ON CONFLICT (subscription_id, period_start, period_end) DO NOTHING
                    """
                ),
                {
                    "uid": usage.usage_id,
                    "sid": usage.subscription_id,
                    "start": usage.period_start,
                    "end": usage.period_end,
                    "orgs": usage.organizations_count,
                    "locs": usage.locations_count,
                    "qrs": usage.qr_codes_count,
                    "feedbacks": usage.feedbacks_count,
                    "members": usage.team_members_count,
                    "updated": usage.last_updated_at,
                },
            )
            row = await conn.execute(
                text(
                    "SELECT * FROM subscription_usage "
                    "WHERE subscription_id = :sid "
                    "AND period_start = :start AND period_end = :end"
                ),
                {"sid": usage.subscription_id, "start": usage.period_start, "end": usage.period_end},
            )
            r = row.mappings().first()
            if r is None:
                return usage
            return self._row_to_usage(r)

    async def increment(
        self, usage_id: str, resource: ResourceType, delta: int, at: datetime
    ) -> None:
        # Column name comes from a closed mapping, never from input.
        column = RESOURCE_USAGE_FIELDS[resource]
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    "UPDATE subscription_usage "
                    f"SET {column} = GREATEST({column} + :delta, 0), "
                    "last_updated_at = :at WHERE usage_id = :uid"
                ),
                {"delta": delta, "at": at, "uid": usage_id},
            )

    async def find_by_subscription(self, subscription_id: str) -> list[SubscriptionUsage]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM subscription_usage WHERE subscription_id = :sid "
                    "ORDER BY period_start DESC"
                ),
                {"sid": subscription_id},
            )
            return [self._row_to_usage(r) for r in result.mappings().all()]

    async def create_event(self, event: UsageEvent) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO usage_events
                        (event_id, subscription_id, event_type, resource_type,
                         resource_id, metadata, created_at)
                    VALUES
                        (:eid, :sid, :etype, :rtype, :rid, CAST(:meta AS JSONB), :created)
                    """
                ),
                {
                    "eid": event.event_id,
                    "sid": event.subscription_id,
                    "etype": event.event_type.value,
                    "rtype": event.resource_type.value,
                    "rid": event.resource_id,
                    "meta": json.dumps(event.metadata),
                    "created": event.created_at,
                },
            )

    async def find_events_by_subscription(
        self, subscription_id: str, limit: int = 100
    ) -> list[UsageEvent]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "SELECT * FROM usage_events WHERE subscription_id = :sid "
                    "ORDER BY created_at DESC LIMIT :limit"
                ),
                {"sid": subscription_id, "limit": limit},
            )
            return [self._row_to_event(r) for r in result.mappings().all()]

    @staticmethod
    def _row_to_usage(r: object) -> SubscriptionUsage:
        """Convert a DB row mapping to a SubscriptionUsage dataclass."""
        return SubscriptionUsage(
            usage_id=r["usage_id"],  # type: ignore[index]
            subscription_id=r["subscription_id"],  # type: ignore[index]
            period_start=r["period_start"],  # type: ignore[index]
            period_end=r["period_end"],  # type: ignore[index]
            organizations_count=r["organizations_count"],  # type: ignore[index]
            locations_count=r["locations_count"],  # type: ignore[index]
            qr_codes_count=r["qr_codes_count"],  # type: ignore[index]
            feedbacks_count=r["feedbacks_count"],  # type: ignore[index]
            team_members_count=r["team_members_count"],  # type: ignore[index]
            last_updated_at=r["last_updated_at"],  # type: ignore[index]
        )

    @staticmethod
    def _row_to_event(r: object) -> UsageEvent:
        """Convert a DB row mapping to a UsageEvent dataclass."""
        meta = r["metadata"] if r["metadata"] else {}  # type: ignore[index]
        if isinstance(meta, str):
            meta = json.loads(meta)

        return UsageEvent(
            event_id=r["event_id"],  # type: ignore[index]
            subscription_id=r["subscription_id"],  # type: ignore[index]
            event_type=UsageEventType(r["event_type"]),  # type: ignore[index]
            resource_type=ResourceType(r["resource_type"]),  # type: ignore[index]
            resource_id=r.get("resource_id"),  # type: ignore[union-attr]
            metadata=meta,
            created_at=r["created_at"],  # type: ignore[index]
        )
