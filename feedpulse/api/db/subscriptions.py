"""DB-backed subscription repository. Plans are joined in on every read."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from feedpulse.core.interfaces import BaseSubscriptionRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import Subscription, SubscriptionPlan, SubscriptionStatus

log = get_logger(__name__)

_SELECT = """
    SELECT
        s.subscription_id, s.account_id, s.status,
        s.current_period_start, s.current_period_end,
        s.cancel_at, s.cancelled_at,
        s.provider_customer_id, s.provider_subscription_id,
        p.plan_id, p.code, p.name, p.price, p.currency, p.interval,
        p.max_organizations, p.max_locations, p.max_qr_codes,
        p.max_feedbacks_per_month, p.max_team_members,
        p.has_basic_analytics, p.has_advanced_analytics, p.has_feedback_explorer,
        p.has_custom_branding, p.has_priority_support
    FROM subscriptions s
    JOIN subscription_plans p ON p.plan_id = s.plan_id
"""


class SubscriptionRepository(BaseSubscriptionRepository):
    """Async PostgreSQL-backed subscription reads."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_id(self, subscription_id: str) -> Subscription | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(_SELECT + " WHERE s.subscription_id = :sid"),
                {"sid": subscription_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_subscription(r)

    async def find_by_account_id(self, account_id: str) -> Subscription | None:
        """Latest subscription of an account, active ones first."""
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(
                    _SELECT
                    + " WHERE s.account_id = :aid"
                    " ORDER BY (s.status = 'active') DESC, s.current_period_start DESC"
                    " LIMIT 1"
                ),
                {"aid": account_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_subscription(r)

    async def list_active(self) -> list[Subscription]:
        async with self._engine.begin() as conn:
            result = await conn.execute(text(_SELECT + " WHERE s.status = 'active'"))
            return [self._row_to_subscription(r) for r in result.mappings().all()]

    @staticmethod
    def _row_to_subscription(r: object) -> Subscription:
        """Convert a joined subscription/plan row to a Subscription dataclass."""
        plan = SubscriptionPlan(
            plan_id=r["plan_id"],  # type: ignore[index]
            code=r["code"],  # type: ignore[index]
            name=r["name"],  # type: ignore[index]
            price=float(r["price"]),  # type: ignore[index]
            currency=r["currency"],  # type: ignore[index]
            interval=r["interval"],  # type: ignore[index]
            max_organizations=r["max_organizations"],  # type: ignore[index]
            max_locations=r["max_locations"],  # type: ignore[index]
            max_qr_codes=r["max_qr_codes"],  # type: ignore[index]
            max_feedbacks_per_month=r["max_feedbacks_per_month"],  # type: ignore[index]
            max_team_members=r["max_team_members"],  # type: ignore[index]
            has_basic_analytics=r["has_basic_analytics"],  # type: ignore[index]
            has_advanced_analytics=r["has_advanced_analytics"],  # type: ignore[index]
            has_feedback_explorer=r["has_feedback_explorer"],  # type: ignore[index]
            has_custom_branding=r["has_custom_branding"],  # type: ignore[index]
            has_priority_support=r["has_priority_support"],  # type: ignore[index]
        )

        status_str: str = r["status"]  # type: ignore[index]
        try:
            status = SubscriptionStatus(status_str)
        except ValueError:
            log.warning("unknown_subscription_status", status=status_str)
            status = SubscriptionStatus.EXPIRED

        return Subscription(
            subscription_id=r["subscription_id"],  # type: ignore[index]
            account_id=r["account_id"],  # type: ignore[index]
            plan=plan,
            status=status,
            current_period_start=r["current_period_start"],  # type: ignore[index]
            current_period_end=r["current_period_end"],  # type: ignore[index]
            cancel_at=r.get("cancel_at"),  # type: ignore[union-attr]
            cancelled_at=r.get("cancelled_at"),  # type: ignore[union-attr]
            provider_customer_id=r.get("provider_customer_id") or "",  # type: ignore[union-attr]
            provider_subscription_id=r.get("provider_subscription_id") or "",  # type: ignore[union-attr]
        )
