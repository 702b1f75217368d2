"""
Organization Lifecycle Tracker.

WHAT: Explicit state machine for an organization's onboarding, approval
and operational status.

WHY: Lifecycle status gates what an organization may do, and it evolves
independently of billing: an operator can suspend an organization whose
subscription is perfectly healthy, and a past-due subscription never
blocks a suspension. Every change goes through one transition table so
there is no way to reach a status the table does not allow.

HOW:
- Each named operation (start, submit, approve, ...) looks up its allowed
  sources and its target in TRANSITIONS.
- One transaction per transition; the organization's version column makes
  a concurrent transition fail with ConcurrencyConflict instead of
  silently overwriting. Callers retry.
- The owner is notified after commit (best-effort).

Transitions:
    IDLE       --start-->     ONBOARDING
    ONBOARDING --submit-->    PENDING
    PENDING    --approve-->   ACTIVE
    PENDING    --reject-->    REJECTED
    REJECTED   --reopen-->    ONBOARDING
    ACTIVE     --suspend-->   SUSPENDED
    SUSPENDED  --reinstate--> ACTIVE
    ACTIVE     --archive-->   ARCHIVED
    SUSPENDED  --archive-->   ARCHIVED
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_access.core.exceptions import (
    ConcurrencyConflict,
    InvalidTransition,
    OrganizationNotFoundError,
    ValidationError,
)
from partner_access.dao.organization import OrganizationDAO
from partner_access.models.organization import Organization, OrganizationStatus
from partner_access.schemas.lifecycle import LifecycleState
from partner_access.services.notification_service import (
    NotificationDispatcher,
    NotificationTemplate,
    get_notification_dispatcher,
)

logger = logging.getLogger(__name__)


class LifecycleTransition(str, Enum):
    """Named lifecycle operations."""

    START = "start"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    REOPEN = "reopen"
    SUSPEND = "suspend"
    REINSTATE = "reinstate"
    ARCHIVE = "archive"


TRANSITIONS: Dict[LifecycleTransition, Tuple[FrozenSet[OrganizationStatus], OrganizationStatus]] = {
    LifecycleTransition.START: (
        frozenset({OrganizationStatus.IDLE}),
        OrganizationStatus.ONBOARDING,
    ),
    LifecycleTransition.SUBMIT: (
        frozenset({OrganizationStatus.ONBOARDING}),
        OrganizationStatus.PENDING,
    ),
    LifecycleTransition.APPROVE: (
        frozenset({OrganizationStatus.PENDING}),
        OrganizationStatus.ACTIVE,
    ),
    LifecycleTransition.REJECT: (
        frozenset({OrganizationStatus.PENDING}),
        OrganizationStatus.REJECTED,
    ),
    LifecycleTransition.REOPEN: (
        frozenset({OrganizationStatus.REJECTED}),
        OrganizationStatus.ONBOARDING,
    ),
    LifecycleTransition.SUSPEND: (
        frozenset({OrganizationStatus.ACTIVE}),
        OrganizationStatus.SUSPENDED,
    ),
    LifecycleTransition.REINSTATE: (
        frozenset({OrganizationStatus.SUSPENDED}),
        OrganizationStatus.ACTIVE,
    ),
    LifecycleTransition.ARCHIVE: (
        frozenset({OrganizationStatus.ACTIVE, OrganizationStatus.SUSPENDED}),
        OrganizationStatus.ARCHIVED,
    ),
}

OWNER_NOTIFICATIONS = {
    LifecycleTransition.APPROVE: NotificationTemplate.ORGANIZATION_APPROVED,
    LifecycleTransition.REJECT: NotificationTemplate.ORGANIZATION_REJECTED,
    LifecycleTransition.SUSPEND: NotificationTemplate.ORGANIZATION_SUSPENDED,
    LifecycleTransition.REINSTATE: NotificationTemplate.ORGANIZATION_REINSTATED,
    LifecycleTransition.ARCHIVE: NotificationTemplate.ORGANIZATION_ARCHIVED,
}


def allowed_transitions(status: OrganizationStatus) -> FrozenSet[LifecycleTransition]:
    """Transitions that may be applied from `status`."""
    return frozenset(
        transition for transition, (sources, _) in TRANSITIONS.items() if status in sources
    )


class OrganizationLifecycle:
    """
    Lifecycle operations on organizations.

    Every operation returns the LifecycleState after the change.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self._session_factory = session_factory
        self.notifier = notifier or get_notification_dispatcher()

    async def create_organization(
        self,
        owner_user_id: str,
        name: str,
        slug: Optional[str] = None,
    ) -> LifecycleState:
        """
        Create an IDLE organization with its owner membership.

        Raises:
            ValidationError: Blank name, taken slug, or the user already
                owns an organization
            ConcurrencyConflict: A concurrent create won the race
        """
        if not owner_user_id or not name or not name.strip():
            raise ValidationError("Organization name and owner are required")

        try:
            async with self._session_factory() as session, session.begin():
                dao = OrganizationDAO(session)
                if await dao.get_by_owner_user_id(owner_user_id) is not None:
                    raise ValidationError(
                        "User already owns an organization",
                        owner_user_id=owner_user_id,
                    )
                if slug is not None and not await dao.slug_available(slug):
                    raise ValidationError("Organization slug is taken", slug=slug)

                organization = await dao.create_with_owner(
                    owner_user_id=owner_user_id, name=name.strip(), slug=slug
                )
                state = LifecycleState.from_model(organization)
        except IntegrityError as e:
            raise ConcurrencyConflict(
                "Organization created concurrently",
                owner_user_id=owner_user_id,
            ) from e

        logger.info(
            "Organization created",
            extra={"organization_id": state.organization_id, "owner_user_id": owner_user_id},
        )
        return state

    async def get_state(self, organization_id: int) -> LifecycleState:
        """
        Get the current lifecycle state.

        Raises:
            OrganizationNotFoundError: If the organization doesn't exist
        """
        async with self._session_factory() as session:
            organization = await self._load(OrganizationDAO(session), organization_id)
            return LifecycleState.from_model(organization)

    # ========================================================================
    # Named transitions
    # ========================================================================

    async def start(
        self, organization_id: int, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Owner begins onboarding."""
        return await self._transition(
            organization_id, LifecycleTransition.START, expected_version=expected_version
        )

    async def submit(
        self, organization_id: int, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Owner submits the application for review."""
        return await self._transition(
            organization_id, LifecycleTransition.SUBMIT, expected_version=expected_version
        )

    async def approve(
        self, organization_id: int, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Reviewer approves the application. Clears any previous reasons."""
        return await self._transition(
            organization_id, LifecycleTransition.APPROVE, expected_version=expected_version
        )

    async def reject(
        self, organization_id: int, reason: str, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Reviewer rejects the application with a reason shown to the owner."""
        return await self._transition(
            organization_id,
            LifecycleTransition.REJECT,
            reason=reason,
            expected_version=expected_version,
        )

    async def reopen(
        self, organization_id: int, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """
        Owner returns a rejected application to onboarding.

        The rejection reason is kept so the owner can see what to fix.
        """
        return await self._transition(
            organization_id, LifecycleTransition.REOPEN, expected_version=expected_version
        )

    async def suspend(
        self, organization_id: int, reason: str, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Operator suspends an active organization. Billing status is not consulted."""
        return await self._transition(
            organization_id,
            LifecycleTransition.SUSPEND,
            reason=reason,
            expected_version=expected_version,
        )

    async def reinstate(
        self, organization_id: int, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Operator lifts a suspension."""
        return await self._transition(
            organization_id, LifecycleTransition.REINSTATE, expected_version=expected_version
        )

    async def archive(
        self, organization_id: int, *, expected_version: Optional[int] = None
    ) -> LifecycleState:
        """Archive an active or suspended organization. Terminal."""
        return await self._transition(
            organization_id, LifecycleTransition.ARCHIVE, expected_version=expected_version
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _transition(
        self,
        organization_id: int,
        transition: LifecycleTransition,
        *,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LifecycleState:
        """
        Apply one transition from the table.

        Raises:
            ValidationError: Reason required but blank
            OrganizationNotFoundError: Unknown organization
            ConcurrencyConflict: expected_version is stale, or a concurrent
                writer changed the organization first
            InvalidTransition: Current status is not an allowed source
        """
        if transition in (LifecycleTransition.REJECT, LifecycleTransition.SUSPEND):
            if reason is None or not reason.strip():
                raise ValidationError(
                    f"A reason is required to {transition.value} an organization",
                    organization_id=organization_id,
                )
            reason = reason.strip()

        sources, target = TRANSITIONS[transition]

        async with self._session_factory() as session, session.begin():
            dao = OrganizationDAO(session)
            organization = await self._load(dao, organization_id)

            if expected_version is not None and organization.version != expected_version:
                raise ConcurrencyConflict(
                    "Organization changed since it was read",
                    organization_id=organization_id,
                    expected_version=expected_version,
                    current_version=organization.version,
                )

            source = organization.status
            if source not in sources:
                raise InvalidTransition(
                    f"Cannot {transition.value} an organization in status {source.value}",
                    organization_id=organization_id,
                    transition=transition.value,
                    status=source.value,
                )

            await dao.update(organization, status=target, **self._side_fields(transition, reason))
            state = LifecycleState.from_model(organization)
            owner_user_id = organization.owner_user_id
            organization_name = organization.name

        logger.info(
            f"Organization {transition.value}: {source.value} -> {target.value}",
            extra={
                "organization_id": organization_id,
                "transition": transition.value,
                "from_status": source.value,
                "to_status": target.value,
            },
        )

        template = OWNER_NOTIFICATIONS.get(transition)
        if template is not None:
            await self.notifier.send(
                owner_user_id,
                template,
                {
                    "organization_id": organization_id,
                    "organization_name": organization_name,
                    "status": target.value,
                    "reason": reason,
                    "url": self.notifier.dashboard_url("/status" if reason else "/"),
                },
            )

        return state

    @staticmethod
    def _side_fields(transition: LifecycleTransition, reason: Optional[str]) -> dict:
        if transition == LifecycleTransition.REJECT:
            return {"rejection_reason": reason}
        if transition == LifecycleTransition.SUSPEND:
            return {"ban_reason": reason}
        if transition == LifecycleTransition.APPROVE:
            return {"rejection_reason": None, "ban_reason": None}
        if transition == LifecycleTransition.REINSTATE:
            return {"ban_reason": None}
        return {}

    @staticmethod
    async def _load(dao: OrganizationDAO, organization_id: int) -> Organization:
        organization = await dao.get_by_id(organization_id)
        if organization is None:
            raise OrganizationNotFoundError(organization_id=organization_id)
        return organization
