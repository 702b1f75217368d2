"""
Business logic services package.

WHY: Services contain business logic separated from the webhook ingress and
data access, following the three-layer architecture (API → Service → DAO).
"""
