"""
Entitlement snapshot DAO.

WHAT: Lookups of the one snapshot per organization, by organization or
by the provider subscription id carried on billing events.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_access.dao.base import BaseDAO
from partner_access.models.entitlement import EntitlementSnapshot


class EntitlementSnapshotDAO(BaseDAO[EntitlementSnapshot]):
    """Data Access Object for EntitlementSnapshot model."""

    def __init__(self, session: AsyncSession):
        super().__init__(EntitlementSnapshot, session)

    async def get_by_organization_id(self, organization_id: int) -> Optional[EntitlementSnapshot]:
        """Get the snapshot of an organization."""
        result = await self.session.execute(
            select(EntitlementSnapshot).where(
                EntitlementSnapshot.organization_id == organization_id
            )
        )
        return result.scalar_one_or_none()

    async def get_by_external_subscription_id(
        self, external_subscription_id: str
    ) -> Optional[EntitlementSnapshot]:
        """
        Get snapshot by provider subscription ID.

        WHY: Essential for webhook processing. Every subscription and
        invoice event carries the subscription id as its object ref.

        Args:
            external_subscription_id: Provider subscription ID (sub_xxx)

        Returns:
            EntitlementSnapshot if found, None otherwise
        """
        result = await self.session.execute(
            select(EntitlementSnapshot).where(
                EntitlementSnapshot.external_subscription_id == external_subscription_id
            )
        )
        return result.scalar_one_or_none()
