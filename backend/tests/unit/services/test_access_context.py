"""
Unit tests for AccessContextAssembler.
"""

import pytest

from partner_access.models.entitlement import EntitlementStatus
from partner_access.models.member import MemberRole
from partner_access.models.organization import OrganizationStatus
from partner_access.schemas.access import Capability
from partner_access.schemas.entitlement import DEFAULT_ENTITLEMENT
from partner_access.services.access_context import AccessContextAssembler
from tests.factories import MemberFactory, OrganizationFactory, SnapshotFactory


class TestAssemble:
    """Typed access context for dashboard requests."""

    @pytest.mark.asyncio
    async def test_user_without_organization(self, db_session):
        context = await AccessContextAssembler(db_session).assemble("user_loner")

        assert not context.has_organization
        assert context.role is None
        assert context.decision is None
        assert context.entitlement is DEFAULT_ENTITLEMENT

    @pytest.mark.asyncio
    async def test_owner_of_active_organization(self, db_session):
        organization = await OrganizationFactory.create(
            db_session, owner_user_id="owner_1", status=OrganizationStatus.ACTIVE
        )
        await SnapshotFactory.create(
            db_session, organization, max_members=5, has_analytics=True
        )

        context = await AccessContextAssembler(db_session).assemble("owner_1")

        assert context.organization.id == organization.id
        assert context.role == MemberRole.OWNER
        assert context.entitlement.plan_ref.slug == "starter"
        assert context.decision.can(Capability.ANALYTICS)
        assert context.decision.can(Capability.TEAM)

    @pytest.mark.asyncio
    async def test_member_without_snapshot(self, db_session):
        organization = await OrganizationFactory.create(
            db_session, status=OrganizationStatus.ACTIVE
        )
        await MemberFactory.create(db_session, organization, user_id="staff_1")

        context = await AccessContextAssembler(db_session).assemble("staff_1")

        assert context.role == MemberRole.MEMBER
        assert context.entitlement.is_default
        assert not context.decision.can(Capability.TEAM)

    @pytest.mark.asyncio
    async def test_suspended_carries_ban_reason(self, db_session):
        organization = await OrganizationFactory.create(
            db_session,
            owner_user_id="owner_s",
            status=OrganizationStatus.SUSPENDED,
            ban_reason="Fake reviews",
        )
        await SnapshotFactory.create(db_session, organization, status=EntitlementStatus.ACTIVE)

        context = await AccessContextAssembler(db_session).assemble("owner_s")

        assert context.organization.ban_reason == "Fake reviews"
        assert context.decision.capabilities == {Capability.OVERVIEW}
        guard = context.decision.route_guard("/listings")
        assert guard.redirect_to == "/status"
        assert guard.reason == "Fake reviews"
