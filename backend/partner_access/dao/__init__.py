"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from partner_access.dao.base import BaseDAO
from partner_access.dao.organization import OrganizationDAO, MemberDAO
from partner_access.dao.plan import SubscriptionPlanDAO
from partner_access.dao.entitlement import EntitlementSnapshotDAO
from partner_access.dao.billing_event import (
    ProcessedBillingEventDAO,
    HeldBillingEventDAO,
    InvoicePaymentDAO,
)

__all__ = [
    "BaseDAO",
    "OrganizationDAO",
    "MemberDAO",
    "SubscriptionPlanDAO",
    "EntitlementSnapshotDAO",
    "ProcessedBillingEventDAO",
    "HeldBillingEventDAO",
    "InvoicePaymentDAO",
]
