"""
Organization model.

WHY: An organization is the tenant whose access we compute. Its lifecycle
status (onboarding, approval, suspension) evolves independently of billing
and is only ever changed through the lifecycle transition table.

CONCURRENCY:
- `version` is the SQLAlchemy version_id_col: every UPDATE carries
  `WHERE version = :loaded_version`, so two writers racing on the same row
  cannot both win.
- `owner_user_id` is unique: a user owns at most one organization, which
  closes the create-create race when the first subscription event is
  delivered twice concurrently.
"""

import enum

from sqlalchemy import Column, Integer, String, Text, Enum
from sqlalchemy.orm import relationship

from partner_access.models.base import Base, TimestampMixin, PrimaryKeyMixin


class OrganizationStatus(str, enum.Enum):
    """
    Organization lifecycle status.

    Statuses:
    - IDLE: Created, onboarding not started
    - ONBOARDING: Owner is filling in the application
    - PENDING: Application submitted, awaiting review
    - ACTIVE: Approved and operating
    - REJECTED: Application rejected, may be reopened
    - SUSPENDED: Banned by an operator, may be reinstated
    - ARCHIVED: Terminal, record retained
    """

    IDLE = "IDLE"
    ONBOARDING = "ONBOARDING"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class Organization(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Organization (partner tenant).

    Never hard-deleted: ARCHIVED is terminal but the row is kept so billing
    history and audit trails stay attached.
    """

    __tablename__ = "organizations"

    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), nullable=False, unique=True, index=True)

    # Owner user id comes from the identity provider; users live outside this core
    owner_user_id = Column(String(255), nullable=False, unique=True, index=True)

    status = Column(
        Enum(OrganizationStatus),
        nullable=False,
        default=OrganizationStatus.IDLE,
        doc="Lifecycle status",
    )
    rejection_reason = Column(Text, nullable=True)
    ban_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    members = relationship(
        "Member",
        back_populates="organization",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def stored_reason(self):
        """Reason shown on the status page for SUSPENDED / REJECTED organizations."""
        if self.status in (OrganizationStatus.SUSPENDED, OrganizationStatus.ARCHIVED):
            return self.ban_reason
        if self.status == OrganizationStatus.REJECTED:
            return self.rejection_reason
        return None

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, slug={self.slug}, status={self.status})>"
