"""
Organization membership model.

WHY: The access resolver needs the caller's role inside the organization.
Membership is created together with the organization (owner) and role
changes are handled by the team management feature, not here.
"""

import enum

from sqlalchemy import Column, Integer, String, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from partner_access.models.base import Base, TimestampMixin, PrimaryKeyMixin


class MemberRole(str, enum.Enum):
    """Roles a user can hold inside an organization."""

    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"


class Member(Base, PrimaryKeyMixin, TimestampMixin):
    """A user's membership in an organization."""

    __tablename__ = "members"

    organization_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(Enum(MemberRole), nullable=False, default=MemberRole.MEMBER)

    organization = relationship("Organization", back_populates="members", lazy="joined")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_member_org_user"),
    )

    def __repr__(self) -> str:
        return (
            f"<Member(org={self.organization_id}, user={self.user_id}, role={self.role})>"
        )
