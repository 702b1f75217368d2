"""
Entitlement snapshot model.

WHY: The snapshot is the canonical record of what an organization's
subscription allows right now. It mirrors the billing provider's
subscription state and carries a copy of the plan limits taken when the
plan was synced.

INVARIANTS:
- One snapshot per organization (unique organization_id)
- The limits block is only ever written as a complete set
- last_applied_event_at only moves forward
- Deletion marks status=canceled; the row is never removed
- `version` is the optimistic lock column; a plan change that lost a race
  raises StaleDataError on flush instead of interleaving with the winner
"""

import enum

from sqlalchemy import Column, Integer, String, Boolean, Enum, ForeignKey

from partner_access.models.base import Base, TimestampMixin, PrimaryKeyMixin, UTCDateTime


class EntitlementStatus(str, enum.Enum):
    """
    Subscription status values (mirrors Stripe statuses).

    Statuses:
    - TRIALING: Free trial period
    - ACTIVE: Payment successful, full access
    - PAST_DUE: Payment failed, grace period
    - CANCELED: Canceled or deleted at the provider
    - UNPAID: Multiple payment failures, access revoked
    - INCOMPLETE: Initial payment pending
    - INCOMPLETE_EXPIRED: Initial payment failed
    - PAUSED: Subscription paused
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    UNPAID = "unpaid"


# Statuses that keep the stored limits in force (past_due is the grace period)
ENTITLED_STATUSES = frozenset(
    {EntitlementStatus.TRIALING, EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE}
)

LIMIT_FIELDS = (
    "max_listings",
    "max_featured_listings",
    "max_members",
    "max_images_per_listing",
    "max_videos_per_listing",
    "has_analytics",
    "extra_listing_cost",
    "extra_featured_listing_cost",
    "extra_member_cost",
    "extra_image_cost",
    "extra_video_cost",
    "extra_analytics_cost",
)

USAGE_FIELDS = (
    "current_listings",
    "current_featured_listings",
    "current_members",
    "current_total_images",
    "current_total_videos",
)


class EntitlementSnapshot(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription entitlement of one organization.

    RELATIONS:
    - One-to-one with Organization
    - Linked to the billing provider via external_subscription_id
    """

    __tablename__ = "entitlement_snapshots"

    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    external_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        doc="Provider subscription ID (sub_xxx)",
    )
    plan_slug = Column(String(100), nullable=False)
    status = Column(
        Enum(EntitlementStatus),
        nullable=False,
        default=EntitlementStatus.INCOMPLETE,
    )

    # Billing period
    period_start = Column(UTCDateTime, nullable=True)
    period_end = Column(UTCDateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    trial_start = Column(UTCDateTime, nullable=True)
    trial_end = Column(UTCDateTime, nullable=True)

    # Limits copied from the plan at sync time
    max_listings = Column(Integer, nullable=False, default=0)
    max_featured_listings = Column(Integer, nullable=False, default=0)
    max_members = Column(Integer, nullable=False, default=1)
    max_images_per_listing = Column(Integer, nullable=False, default=0)
    max_videos_per_listing = Column(Integer, nullable=False, default=0)
    has_analytics = Column(Boolean, nullable=False, default=False)
    extra_listing_cost = Column(Integer, nullable=True)
    extra_featured_listing_cost = Column(Integer, nullable=True)
    extra_member_cost = Column(Integer, nullable=True)
    extra_image_cost = Column(Integer, nullable=True)
    extra_video_cost = Column(Integer, nullable=True)
    extra_analytics_cost = Column(Integer, nullable=True)

    # Usage counters
    current_listings = Column(Integer, nullable=False, default=0)
    current_featured_listings = Column(Integer, nullable=False, default=0)
    current_members = Column(Integer, nullable=False, default=0)
    current_total_images = Column(Integer, nullable=False, default=0)
    current_total_videos = Column(Integer, nullable=False, default=0)

    last_applied_event_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<EntitlementSnapshot(org={self.organization_id}, plan={self.plan_slug}, "
            f"status={self.status}, v={self.version})>"
        )
