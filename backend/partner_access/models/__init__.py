"""
Database models package.

WHY: Centralizing model imports ensures every table is registered on
Base.metadata before create_all runs, and makes models easy to import.
"""

from partner_access.models.base import Base, TimestampMixin, PrimaryKeyMixin, UTCDateTime
from partner_access.models.organization import Organization, OrganizationStatus
from partner_access.models.member import Member, MemberRole
from partner_access.models.plan import SubscriptionPlan, SubscriptionPlanPrice, BillingInterval
from partner_access.models.entitlement import (
    EntitlementSnapshot,
    EntitlementStatus,
    ENTITLED_STATUSES,
    LIMIT_FIELDS,
    USAGE_FIELDS,
)
from partner_access.models.billing_event import (
    ProcessedBillingEvent,
    HeldBillingEvent,
    HeldReason,
    InvoicePayment,
    PaymentOutcome,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "UTCDateTime",
    "Organization",
    "OrganizationStatus",
    "Member",
    "MemberRole",
    "SubscriptionPlan",
    "SubscriptionPlanPrice",
    "BillingInterval",
    "EntitlementSnapshot",
    "EntitlementStatus",
    "ENTITLED_STATUSES",
    "LIMIT_FIELDS",
    "USAGE_FIELDS",
    "ProcessedBillingEvent",
    "HeldBillingEvent",
    "HeldReason",
    "InvoicePayment",
    "PaymentOutcome",
]
