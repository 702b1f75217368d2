"""
Subscription plan catalog DAO.

WHAT: Looks up plans by provider price id or by slug.

HOW: Only active prices of active plans resolve. Prices eagerly load
their plan so one query answers a price lookup.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_access.dao.base import BaseDAO
from partner_access.models.plan import SubscriptionPlan, SubscriptionPlanPrice


class SubscriptionPlanDAO(BaseDAO[SubscriptionPlan]):
    """Data Access Object for the plan catalog."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPlan, session)

    async def get_active_by_slug(self, slug: str) -> Optional[SubscriptionPlan]:
        """Get an active plan by slug."""
        result = await self.session.execute(
            select(SubscriptionPlan).where(
                SubscriptionPlan.slug == slug,
                SubscriptionPlan.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_active_by_price_id(self, provider_price_id: str) -> Optional[SubscriptionPlan]:
        """
        Get the active plan a provider price belongs to.

        Args:
            provider_price_id: Provider price id (price_xxx)

        Returns:
            The plan, or None if the price is unknown or either side is inactive
        """
        result = await self.session.execute(
            select(SubscriptionPlanPrice).where(
                SubscriptionPlanPrice.provider_price_id == provider_price_id,
                SubscriptionPlanPrice.is_active.is_(True),
            )
        )
        price = result.scalar_one_or_none()
        if price is None or not price.plan.is_active:
            return None
        return price.plan
