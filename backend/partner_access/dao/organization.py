"""
Organization and Member Data Access Objects.

WHAT: Queries for organizations and their memberships.

WHY: The reconciler needs to find an owner's organization before it
provisions a new one, the lifecycle tracker loads organizations to
transition them, and the access context needs a user's membership.
"""

import re
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_access.dao.base import BaseDAO
from partner_access.models.member import Member, MemberRole
from partner_access.models.organization import Organization, OrganizationStatus

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


class OrganizationDAO(BaseDAO[Organization]):
    """Data Access Object for Organization model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Organization, session)

    async def get_by_owner_user_id(self, owner_user_id: str) -> Optional[Organization]:
        """
        Get the organization owned by a user.

        WHY: A user owns at most one organization. The reconciler calls
        this inside the provisioning transaction as the re-check that
        guards against duplicate concurrent first-subscription events.

        Args:
            owner_user_id: Identity provider user id

        Returns:
            Organization if the user owns one, None otherwise
        """
        result = await self.session.execute(
            select(Organization).where(Organization.owner_user_id == owner_user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_slug(self, slug: str) -> Optional[Organization]:
        """Get organization by its unique slug."""
        return await self.get_by_field("slug", slug)

    async def slug_available(self, slug: str) -> bool:
        """Check whether a slug is unused."""
        return not await self.exists(slug=slug)

    async def unique_slug(self, name: str) -> str:
        """
        Derive an unused slug from a display name.

        Appends -2, -3, ... until the slug is free. The unique constraint
        still decides if two writers pick the same slug concurrently.
        """
        base = _SLUG_STRIP.sub("-", name.lower()).strip("-")[:200] or "organization"
        slug = base
        suffix = 2
        while not await self.slug_available(slug):
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug

    async def create_with_owner(
        self,
        owner_user_id: str,
        name: str,
        slug: Optional[str] = None,
        status: OrganizationStatus = OrganizationStatus.IDLE,
    ) -> Organization:
        """
        Create an organization together with its owner membership.

        Raises:
            IntegrityError: If the user already owns an organization or the
                slug is taken (surfaces at flush)
        """
        organization = Organization(
            name=name,
            slug=slug or await self.unique_slug(name),
            owner_user_id=owner_user_id,
            status=status,
        )
        organization.members.append(Member(user_id=owner_user_id, role=MemberRole.OWNER))
        self.session.add(organization)
        await self.session.flush()
        return organization


class MemberDAO(BaseDAO[Member]):
    """Data Access Object for Member model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Member, session)

    async def get_membership(self, organization_id: int, user_id: str) -> Optional[Member]:
        """Get a user's membership in a specific organization."""
        result = await self.session.execute(
            select(Member).where(
                Member.organization_id == organization_id,
                Member.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_primary_membership(self, user_id: str) -> Optional[Member]:
        """
        Get the membership used to build a user's access context.

        WHAT: The owner membership if the user owns an organization,
        otherwise their oldest membership.

        Args:
            user_id: Identity provider user id

        Returns:
            Member with organization loaded, or None
        """
        result = await self.session.execute(
            select(Member)
            .where(Member.user_id == user_id)
            .order_by((Member.role == MemberRole.OWNER).desc(), Member.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_owner(self, organization_id: int) -> Optional[Member]:
        """Get the owner membership of an organization."""
        result = await self.session.execute(
            select(Member).where(
                Member.organization_id == organization_id,
                Member.role == MemberRole.OWNER,
            )
        )
        return result.scalar_one_or_none()
