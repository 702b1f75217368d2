"""
Access control schemas.

WHAT: Capabilities, route decisions and the typed access context handed
to the dashboard layouts.

WHY: Consumers used to read a loose bag of auth, organization and
subscription fields and re-derive permissions at every call site. One
explicit structure, with absence spelled out as None, replaces that.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from partner_access.models.member import MemberRole
from partner_access.models.organization import OrganizationStatus
from partner_access.schemas.entitlement import EntitlementSnapshotView


class Capability(str, Enum):
    """Dashboard areas a member may use."""

    OVERVIEW = "overview"
    ONBOARDING = "onboarding"
    ORGANIZATION_PROFILE = "organization-profile"
    SUBSCRIPTION = "subscription"
    LISTINGS = "listings"
    BOOKINGS = "bookings"
    ANALYTICS = "analytics"
    TEAM = "team"
    PAYOUTS = "payouts"
    FIX_APPLICATION = "fix-application"


class RouteDecision(BaseModel):
    """Route guard verdict: allowed, or where to send the user instead."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    redirect_to: Optional[str] = None
    reason: Optional[str] = None


class OrganizationSummary(BaseModel):
    """Organization fields the dashboard needs."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str
    slug: str
    status: OrganizationStatus
    rejection_reason: Optional[str] = None
    ban_reason: Optional[str] = None
