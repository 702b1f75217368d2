"""
Organization lifecycle schemas.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from partner_access.models.organization import OrganizationStatus


class LifecycleState(BaseModel):
    """Lifecycle status of an organization as of one read."""

    model_config = ConfigDict(frozen=True)

    organization_id: int
    status: OrganizationStatus
    rejection_reason: Optional[str] = None
    ban_reason: Optional[str] = None
    version: int

    @classmethod
    def from_model(cls, organization) -> "LifecycleState":
        return cls(
            organization_id=organization.id,
            status=organization.status,
            rejection_reason=organization.rejection_reason,
            ban_reason=organization.ban_reason,
            version=organization.version,
        )
