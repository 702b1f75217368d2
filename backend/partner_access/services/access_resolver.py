"""
Access Resolver.

WHAT: Pure function mapping {lifecycle status, entitlement snapshot,
member role} to a capability set and a route guard.

WHY: Every dashboard layout needs the same answer to "what may this
member do right now". Computing it in one referentially transparent
function means two call sites can never disagree, and results can be
memoized and compared directly.

HOW: Rules are evaluated in order, first match wins:
1. SUSPENDED / ARCHIVED -> {overview}; other routes go to /status
2. IDLE / ONBOARDING    -> {onboarding}; dashboard routes go to /onboarding
3. PENDING              -> {overview, organization-profile} (+subscription for owner)
4. REJECTED             -> PENDING set + {fix-application}
5. ACTIVE               -> base set, with analytics / team / subscription /
                           payouts gated by entitlement and role
The snapshot is reduced to the two facts the rules read (analytics
entitled, more than one member allowed), and the memoization key is built
from those, not from the whole snapshot.
"""

from functools import lru_cache
from typing import FrozenSet, Optional, Union

from pydantic import BaseModel, ConfigDict

from partner_access.models.member import MemberRole
from partner_access.models.organization import OrganizationStatus
from partner_access.schemas.access import Capability, RouteDecision
from partner_access.schemas.entitlement import EntitlementSnapshotView, effective_entitlement

STATUS_ROUTE = "/status"
ONBOARDING_ROUTE = "/onboarding"
HOME_ROUTE = "/"

# Route prefix -> capabilities, any of which grants the route. "/" matches
# only itself and unmapped routes are denied.
ROUTE_CAPABILITIES = {
    "/": frozenset({Capability.OVERVIEW}),
    "/onboarding": frozenset({Capability.ONBOARDING, Capability.FIX_APPLICATION}),
    "/organization": frozenset({Capability.ORGANIZATION_PROFILE}),
    "/subscription": frozenset({Capability.SUBSCRIPTION}),
    "/listings": frozenset({Capability.LISTINGS}),
    "/bookings": frozenset({Capability.BOOKINGS}),
    "/analytics": frozenset({Capability.ANALYTICS}),
    "/team": frozenset({Capability.TEAM}),
    "/payouts": frozenset({Capability.PAYOUTS}),
}

# Longest prefix first
_ROUTE_PREFIXES = sorted(ROUTE_CAPABILITIES, key=len, reverse=True)

ACTIVE_BASE_CAPABILITIES = frozenset(
    {
        Capability.OVERVIEW,
        Capability.ORGANIZATION_PROFILE,
        Capability.LISTINGS,
        Capability.BOOKINGS,
    }
)

MANAGING_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN})

_REASON_STATUSES = frozenset(
    {OrganizationStatus.SUSPENDED, OrganizationStatus.ARCHIVED, OrganizationStatus.REJECTED}
)


class AccessDecision(BaseModel):
    """Capabilities of one member plus the route guard built on them."""

    model_config = ConfigDict(frozen=True)

    status: OrganizationStatus
    role: MemberRole
    capabilities: FrozenSet[Capability]
    reason: Optional[str] = None

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def route_guard(self, route: str) -> RouteDecision:
        """
        Decide whether `route` may be shown.

        Args:
            route: Dashboard path, e.g. "/listings/42/edit"

        Returns:
            RouteDecision(allowed=True), or a redirect target
        """
        path = _normalize(route)
        if _matches(path, STATUS_ROUTE):
            return RouteDecision(allowed=True)

        prefix = _route_prefix(path)
        required = ROUTE_CAPABILITIES[prefix] if prefix else frozenset()
        if required & self.capabilities:
            return RouteDecision(allowed=True)

        if self.status in (OrganizationStatus.SUSPENDED, OrganizationStatus.ARCHIVED):
            return RouteDecision(allowed=False, redirect_to=STATUS_ROUTE, reason=self.reason)
        if self.status in (OrganizationStatus.IDLE, OrganizationStatus.ONBOARDING):
            return RouteDecision(allowed=False, redirect_to=ONBOARDING_ROUTE)
        return RouteDecision(allowed=False, redirect_to=HOME_ROUTE)


def resolve(
    status: Union[OrganizationStatus, str],
    snapshot: Optional[EntitlementSnapshotView],
    role: Union[MemberRole, str],
    *,
    reason: Optional[str] = None,
) -> AccessDecision:
    """
    Resolve a member's access.

    Args:
        status: Organization lifecycle status
        snapshot: Entitlement snapshot, None or DEFAULT_ENTITLEMENT when
            the organization has none
        role: Member role
        reason: Stored rejection / ban reason, carried for the status page

    Returns:
        AccessDecision; equal inputs return the same (cached) object
    """
    status = OrganizationStatus(status)
    role = MemberRole(role)
    entitlement = effective_entitlement(snapshot)
    if status not in _REASON_STATUSES:
        reason = None
    return _resolve(
        status,
        reason,
        entitlement.limits.has_analytics,
        entitlement.limits.max_members > 1,
        role,
    )


@lru_cache(maxsize=1024)
def _resolve(
    status: OrganizationStatus,
    reason: Optional[str],
    analytics_entitled: bool,
    multi_member_entitled: bool,
    role: MemberRole,
) -> AccessDecision:
    return AccessDecision(
        status=status,
        role=role,
        capabilities=_capabilities(status, analytics_entitled, multi_member_entitled, role),
        reason=reason,
    )


def _capabilities(
    status: OrganizationStatus,
    analytics_entitled: bool,
    multi_member_entitled: bool,
    role: MemberRole,
) -> FrozenSet[Capability]:
    if status in (OrganizationStatus.SUSPENDED, OrganizationStatus.ARCHIVED):
        return frozenset({Capability.OVERVIEW})

    if status in (OrganizationStatus.IDLE, OrganizationStatus.ONBOARDING):
        return frozenset({Capability.ONBOARDING})

    if status in (OrganizationStatus.PENDING, OrganizationStatus.REJECTED):
        capabilities = {Capability.OVERVIEW, Capability.ORGANIZATION_PROFILE}
        if role == MemberRole.OWNER:
            capabilities.add(Capability.SUBSCRIPTION)
        if status == OrganizationStatus.REJECTED:
            capabilities.add(Capability.FIX_APPLICATION)
        return frozenset(capabilities)

    # ACTIVE
    capabilities = set(ACTIVE_BASE_CAPABILITIES)
    if analytics_entitled and role in MANAGING_ROLES:
        capabilities.add(Capability.ANALYTICS)
    if multi_member_entitled and role in MANAGING_ROLES:
        capabilities.add(Capability.TEAM)
    if role == MemberRole.OWNER:
        capabilities.update({Capability.SUBSCRIPTION, Capability.PAYOUTS})
    return frozenset(capabilities)


def _normalize(route: str) -> str:
    path = (route or HOME_ROUTE).split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or HOME_ROUTE
    return path


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def _route_prefix(path: str) -> Optional[str]:
    """Longest mapped prefix of `path`; the home route matches only itself."""
    if path == HOME_ROUTE:
        return HOME_ROUTE
    for prefix in _ROUTE_PREFIXES:
        if prefix != HOME_ROUTE and _matches(path, prefix):
            return prefix
    return None
