"""
Entitlement value types.

WHAT: Immutable Pydantic models describing plan limits, the entitlement
snapshot as seen by readers, and the two patch shapes the entitlement
store accepts.

WHY: Readers (the access resolver, usage checks) must never see a
half-written limits block. Handing them frozen values built from one
row read, instead of live ORM objects, makes that structural. Frozen
models are also hashable, so the resolver can memoize on them.

HOW: The snapshot view is a tagged value {plan_ref, limits}: the limits
are what was copied at sync time, not a live join to the catalog.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from partner_access.models.entitlement import ENTITLED_STATUSES, EntitlementStatus


# ============================================================================
# Limits
# ============================================================================


class PlanLimits(BaseModel):
    """
    Complete limits block of a plan.

    Counts are hard limits. Overage costs are in minor currency units,
    None when the overage is not sold.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    max_listings: int = Field(default=0, ge=0)
    max_featured_listings: int = Field(default=0, ge=0)
    max_members: int = Field(default=1, ge=0)
    max_images_per_listing: int = Field(default=0, ge=0)
    max_videos_per_listing: int = Field(default=0, ge=0)
    has_analytics: bool = False

    extra_listing_cost: Optional[int] = None
    extra_featured_listing_cost: Optional[int] = None
    extra_member_cost: Optional[int] = None
    extra_image_cost: Optional[int] = None
    extra_video_cost: Optional[int] = None
    extra_analytics_cost: Optional[int] = None

    @property
    def max_total_images(self) -> int:
        return self.max_images_per_listing * self.max_listings

    @property
    def max_total_videos(self) -> int:
        return self.max_videos_per_listing * self.max_listings


# Most restrictive named plan: what an organization without a snapshot gets
RESTRICTIVE_DEFAULT_LIMITS = PlanLimits(
    max_listings=0,
    max_featured_listings=0,
    max_members=1,
    max_images_per_listing=0,
    max_videos_per_listing=0,
    has_analytics=False,
)


class UsageCounters(BaseModel):
    """Current usage of an organization."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    current_listings: int = 0
    current_featured_listings: int = 0
    current_members: int = 0
    current_total_images: int = 0
    current_total_videos: int = 0


# Usage counter name -> (snapshot column, limit accessor on PlanLimits)
USAGE_LIMITS = {
    "listings": ("current_listings", "max_listings"),
    "featured_listings": ("current_featured_listings", "max_featured_listings"),
    "members": ("current_members", "max_members"),
    "total_images": ("current_total_images", "max_total_images"),
    "total_videos": ("current_total_videos", "max_total_videos"),
}


# ============================================================================
# Snapshot view
# ============================================================================


class PlanRef(BaseModel):
    """Which plan a snapshot was synced from."""

    model_config = ConfigDict(frozen=True)

    slug: str
    external_subscription_id: Optional[str] = None


class EntitlementSnapshotView(BaseModel):
    """
    Read-only view of an organization's entitlement.

    `is_default` marks the synthetic view used when no snapshot exists.
    """

    model_config = ConfigDict(frozen=True)

    organization_id: Optional[int] = None
    plan_ref: PlanRef
    limits: PlanLimits
    status: Optional[EntitlementStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    usage: UsageCounters = UsageCounters()
    last_applied_event_at: Optional[datetime] = None
    version: int = 0
    is_default: bool = False

    @property
    def has_analytics(self) -> bool:
        return self.limits.has_analytics

    @property
    def max_members(self) -> int:
        return self.limits.max_members

    @classmethod
    def from_model(cls, snapshot) -> "EntitlementSnapshotView":
        """Build a view from an EntitlementSnapshot row."""
        return cls(
            organization_id=snapshot.organization_id,
            plan_ref=PlanRef(
                slug=snapshot.plan_slug,
                external_subscription_id=snapshot.external_subscription_id,
            ),
            limits=PlanLimits.model_validate(snapshot),
            status=snapshot.status,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            trial_start=snapshot.trial_start,
            trial_end=snapshot.trial_end,
            usage=UsageCounters.model_validate(snapshot),
            last_applied_event_at=snapshot.last_applied_event_at,
            version=snapshot.version,
        )


DEFAULT_PLAN_SLUG = "default"

DEFAULT_ENTITLEMENT = EntitlementSnapshotView(
    plan_ref=PlanRef(slug=DEFAULT_PLAN_SLUG),
    limits=RESTRICTIVE_DEFAULT_LIMITS,
    status=None,
    is_default=True,
)


# ============================================================================
# Store patches
# ============================================================================


class StatusUpdate(BaseModel):
    """
    Pure status/date update. Fields left as None are not touched.

    `cancel_at_period_end` uses None for "unchanged" as well.
    """

    model_config = ConfigDict(frozen=True)

    status: Optional[EntitlementStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    def changes(self) -> dict:
        """Fields this update sets."""
        return self.model_dump(exclude_none=True)


class LimitsReplacement(BaseModel):
    """
    Full limits-set replacement, optionally with a status update.

    There is no partial form: every limit field is written.
    """

    model_config = ConfigDict(frozen=True)

    plan_slug: str = Field(min_length=1)
    limits: PlanLimits
    status_update: StatusUpdate = StatusUpdate()


EntitlementPatch = Union[LimitsReplacement, StatusUpdate]


def effective_entitlement(view: Optional[EntitlementSnapshotView]) -> EntitlementSnapshotView:
    """
    The entitlement actually in force.

    Snapshots in trialing, active or past_due (grace period) grant their
    stored limits; anything else is treated as having no snapshot.
    """
    if view is None or view.is_default:
        return DEFAULT_ENTITLEMENT
    if view.status not in ENTITLED_STATUSES:
        return DEFAULT_ENTITLEMENT
    return view
