"""
Access context assembly.

WHAT: Builds the one typed structure a dashboard request needs: who the
user is in which organization, with what role, under which entitlement,
and the resolved access decision.

WHY: Layouts used to read organization and subscription fields out of a
loosely typed session bag, each checking for presence its own way. This
assembler is the single place those lookups happen; absence is explicit
(organization/role/decision are None for users without a membership,
entitlement is DEFAULT_ENTITLEMENT for organizations without a snapshot).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from partner_access.dao.organization import MemberDAO
from partner_access.models.member import MemberRole
from partner_access.schemas.access import OrganizationSummary
from partner_access.schemas.entitlement import DEFAULT_ENTITLEMENT, EntitlementSnapshotView
from partner_access.services.access_resolver import AccessDecision, resolve
from partner_access.services.entitlement_store import EntitlementStore


class AccessContext(BaseModel):
    """Everything the dashboard needs to gate one user's request."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    organization: Optional[OrganizationSummary] = None
    role: Optional[MemberRole] = None
    entitlement: EntitlementSnapshotView = DEFAULT_ENTITLEMENT
    decision: Optional[AccessDecision] = None

    @property
    def has_organization(self) -> bool:
        return self.organization is not None


class AccessContextAssembler:
    """Assembles AccessContext from the database."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.members = MemberDAO(session)
        self.store = EntitlementStore(session)

    async def assemble(self, user_id: str) -> AccessContext:
        """
        Build the access context of a user.

        Args:
            user_id: Identity provider user id

        Returns:
            AccessContext; organization, role and decision are None when
            the user belongs to no organization
        """
        membership = await self.members.get_primary_membership(user_id)
        if membership is None:
            return AccessContext(user_id=user_id)

        organization = membership.organization
        entitlement = await self.store.get(organization.id)

        return AccessContext(
            user_id=user_id,
            organization=OrganizationSummary.model_validate(organization),
            role=membership.role,
            entitlement=entitlement,
            decision=resolve(
                organization.status,
                entitlement,
                membership.role,
                reason=organization.stored_reason,
            ),
        )
