"""
Subscription plan catalog models.

WHY: Plans define the limits an organization gets when it subscribes.
The catalog is edited by operators; entitlement snapshots copy the limits
at sync time so later catalog edits never change what a paying
organization already bought.

ARCHITECTURE:
- One SubscriptionPlan per slug (starter, growth, ...)
- Many SubscriptionPlanPrice rows per plan (monthly / yearly), each linked
  to the billing provider by its price id
"""

import enum

from sqlalchemy import Column, Integer, String, Boolean, Enum, ForeignKey
from sqlalchemy.orm import relationship

from partner_access.models.base import Base, TimestampMixin, PrimaryKeyMixin


class BillingInterval(str, enum.Enum):
    """Billing interval of a plan price."""

    MONTH = "month"
    YEAR = "year"


class SubscriptionPlan(Base, PrimaryKeyMixin, TimestampMixin):
    """
    A named plan with its limits block.

    Overage costs are stored in minor currency units; None means the
    overage is not sold on this plan.
    """

    __tablename__ = "subscription_plans"

    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Limits block
    max_listings = Column(Integer, nullable=False, default=0)
    max_featured_listings = Column(Integer, nullable=False, default=0)
    max_members = Column(Integer, nullable=False, default=1)
    max_images_per_listing = Column(Integer, nullable=False, default=0)
    max_videos_per_listing = Column(Integer, nullable=False, default=0)
    has_analytics = Column(Boolean, nullable=False, default=False)

    # Overage costs
    extra_listing_cost = Column(Integer, nullable=True)
    extra_featured_listing_cost = Column(Integer, nullable=True)
    extra_member_cost = Column(Integer, nullable=True)
    extra_image_cost = Column(Integer, nullable=True)
    extra_video_cost = Column(Integer, nullable=True)
    extra_analytics_cost = Column(Integer, nullable=True)

    trial_enabled = Column(Boolean, nullable=False, default=False)
    trial_days = Column(Integer, nullable=False, default=0)

    prices = relationship(
        "SubscriptionPlanPrice",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(slug={self.slug}, active={self.is_active})>"


class SubscriptionPlanPrice(Base, PrimaryKeyMixin, TimestampMixin):
    """A provider price attached to a plan."""

    __tablename__ = "subscription_plan_prices"

    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_price_id = Column(String(255), nullable=False, unique=True, index=True)
    interval = Column(Enum(BillingInterval), nullable=False, default=BillingInterval.MONTH)
    amount = Column(Integer, nullable=False, default=0, doc="Price in minor units")
    currency = Column(String(3), nullable=False, default="usd")
    is_active = Column(Boolean, nullable=False, default=True)

    plan = relationship("SubscriptionPlan", back_populates="prices", lazy="joined")

    def __repr__(self) -> str:
        return f"<SubscriptionPlanPrice(price={self.provider_price_id}, plan_id={self.plan_id})>"
