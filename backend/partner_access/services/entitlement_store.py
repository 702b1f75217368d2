"""
Entitlement Store.

WHAT: Canonical read/write access to an organization's entitlement
snapshot: plan limits copied at sync time, subscription status and dates,
and usage counters.

WHY: The snapshot is read on every request (through the access resolver)
and written by billing events and usage changes. Routing every write
through one place enforces the invariants:
- The limits block is written as a complete set or not at all
- last_applied_event_at only moves forward
- Usage never exceeds the limit in force and never goes negative

HOW: Operates on a caller-provided session so the reconciler can put the
snapshot write, the idempotency ledger row and the payment ledger row in
one transaction. All fields of a write are assigned before a single
flush; the version column turns a lost race into ConcurrencyConflict.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from partner_access.core.exceptions import LimitExceeded, NotFoundError, ValidationError
from partner_access.dao.entitlement import EntitlementSnapshotDAO
from partner_access.models.entitlement import EntitlementSnapshot, EntitlementStatus
from partner_access.schemas.entitlement import (
    DEFAULT_ENTITLEMENT,
    USAGE_LIMITS,
    EntitlementPatch,
    EntitlementSnapshotView,
    LimitsReplacement,
    StatusUpdate,
    UsageCounters,
    effective_entitlement,
)

logger = logging.getLogger(__name__)


class EntitlementStore:
    """
    Entitlement snapshot store bound to a session.

    The caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.dao = EntitlementSnapshotDAO(session)

    async def get(self, organization_id: int) -> EntitlementSnapshotView:
        """
        Get an organization's entitlement.

        Returns:
            The snapshot view, or DEFAULT_ENTITLEMENT if the organization
            has no snapshot
        """
        snapshot = await self.dao.get_by_organization_id(organization_id)
        if snapshot is None:
            return DEFAULT_ENTITLEMENT
        return EntitlementSnapshotView.from_model(snapshot)

    async def get_by_subscription(
        self, external_subscription_id: str
    ) -> Optional[EntitlementSnapshot]:
        return await self.dao.get_by_external_subscription_id(external_subscription_id)

    async def upsert_from_reconciler(
        self,
        organization_id: int,
        patch: EntitlementPatch,
        *,
        external_subscription_id: Optional[str] = None,
        event_at: Optional[datetime] = None,
        initial_usage: Optional[UsageCounters] = None,
    ) -> EntitlementSnapshotView:
        """
        Apply a billing patch to an organization's snapshot.

        WHAT: A LimitsReplacement writes plan slug and every limit field
        (creating the snapshot if absent); a StatusUpdate writes only
        status and dates.

        Args:
            organization_id: Target organization
            patch: LimitsReplacement or StatusUpdate
            external_subscription_id: Provider subscription id to link
            event_at: Timestamp of the event being applied
            initial_usage: Usage counters for a newly created snapshot

        Returns:
            View of the snapshot after the write

        Raises:
            ValidationError: If patch is neither accepted shape
            NotFoundError: If a StatusUpdate targets a missing snapshot
            ConcurrencyConflict: If the snapshot changed since it was read
        """
        if isinstance(patch, LimitsReplacement):
            status_update = patch.status_update
        elif isinstance(patch, StatusUpdate):
            status_update = patch
        else:
            raise ValidationError(
                "Entitlement patch must be a LimitsReplacement or StatusUpdate",
                patch_type=type(patch).__name__,
            )

        snapshot = await self.dao.get_by_organization_id(organization_id)

        if snapshot is None:
            if not isinstance(patch, LimitsReplacement):
                raise NotFoundError(
                    "No entitlement snapshot to update",
                    organization_id=organization_id,
                )
            usage = initial_usage or UsageCounters()
            snapshot = EntitlementSnapshot(
                organization_id=organization_id,
                external_subscription_id=external_subscription_id,
                plan_slug=patch.plan_slug,
                status=status_update.status or EntitlementStatus.INCOMPLETE,
                cancel_at_period_end=False,
                **patch.limits.model_dump(),
                **usage.model_dump(),
            )
            self.session.add(snapshot)
            logger.info(
                "Creating entitlement snapshot",
                extra={"organization_id": organization_id, "plan_slug": patch.plan_slug},
            )

        values = {}
        if isinstance(patch, LimitsReplacement):
            values["plan_slug"] = patch.plan_slug
            values.update(patch.limits.model_dump())
        values.update(status_update.changes())

        if (
            external_subscription_id is not None
            and snapshot.external_subscription_id != external_subscription_id
        ):
            values["external_subscription_id"] = external_subscription_id

        if event_at is not None and (
            snapshot.last_applied_event_at is None or event_at > snapshot.last_applied_event_at
        ):
            values["last_applied_event_at"] = event_at

        await self.dao.update(snapshot, **values)
        return EntitlementSnapshotView.from_model(snapshot)

    async def adjust_usage(
        self, organization_id: int, field: str, delta: int
    ) -> EntitlementSnapshotView:
        """
        Change a usage counter by `delta`.

        WHAT: Increments are checked against the limit in force;
        decrements are not limit-checked but may not go below zero.

        Args:
            organization_id: Target organization
            field: One of listings, featured_listings, members,
                total_images, total_videos
            delta: Signed change

        Returns:
            View of the snapshot after the change

        Raises:
            ValidationError: Unknown field, or the result would be negative
            LimitExceeded: The result would exceed the limit; nothing changes
        """
        if field not in USAGE_LIMITS:
            raise ValidationError(
                f"Unknown usage counter '{field}'",
                field=field,
                allowed=sorted(USAGE_LIMITS),
            )

        column, limit_name = USAGE_LIMITS[field]
        snapshot = await self.dao.get_by_organization_id(organization_id)

        if snapshot is None:
            if delta < 0:
                raise ValidationError(
                    "Usage cannot go below zero",
                    organization_id=organization_id,
                    field=field,
                )
            if delta > 0:
                raise LimitExceeded(
                    f"No active plan allows more {field.replace('_', ' ')}",
                    organization_id=organization_id,
                    field=field,
                    limit=getattr(DEFAULT_ENTITLEMENT.limits, limit_name),
                )
            return DEFAULT_ENTITLEMENT

        view = EntitlementSnapshotView.from_model(snapshot)
        if delta == 0:
            return view

        current = getattr(snapshot, column)
        new_value = current + delta

        if new_value < 0:
            raise ValidationError(
                "Usage cannot go below zero",
                organization_id=organization_id,
                field=field,
                current=current,
                delta=delta,
            )

        if delta > 0:
            limit = getattr(self.effective(view).limits, limit_name)
            if new_value > limit:
                raise LimitExceeded(
                    f"You have reached the maximum number of "
                    f"{field.replace('_', ' ')} ({limit}) for your plan",
                    organization_id=organization_id,
                    field=field,
                    limit=limit,
                    current=current,
                    delta=delta,
                )

        await self.dao.update(snapshot, **{column: new_value})
        return EntitlementSnapshotView.from_model(snapshot)

    @staticmethod
    def effective(view: Optional[EntitlementSnapshotView]) -> EntitlementSnapshotView:
        """Entitlement in force: canceled/unpaid/etc. snapshots count as none."""
        return effective_entitlement(view)
