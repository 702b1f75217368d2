"""
Billing event bookkeeping DAOs.

WHAT: The idempotency ledger, the held-event queue and the invoice
payment ledger.

WHY: Kept apart from the entitlement DAO because they are written on
every event, including events that change no entitlement at all.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_access.dao.base import BaseDAO
from partner_access.models.billing_event import (
    HeldBillingEvent,
    HeldReason,
    InvoicePayment,
    PaymentOutcome,
    ProcessedBillingEvent,
)


class ProcessedBillingEventDAO(BaseDAO[ProcessedBillingEvent]):
    """Idempotency ledger."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProcessedBillingEvent, session)

    async def is_processed(self, external_event_id: str) -> bool:
        """Check whether an event id was already applied."""
        return await self.exists(external_event_id=external_event_id)

    async def get_by_event_id(self, external_event_id: str) -> Optional[ProcessedBillingEvent]:
        return await self.get_by_field("external_event_id", external_event_id)

    def record(
        self,
        external_event_id: str,
        event_type: str,
        object_ref: Optional[str],
        outcome: str,
    ) -> ProcessedBillingEvent:
        """
        Insert the ledger row for an event.

        Not flushed here: the INSERT goes out with the rest of the unit of
        work, and a concurrent duplicate makes the commit fail with
        IntegrityError on the unique external_event_id.
        """
        entry = ProcessedBillingEvent(
            external_event_id=external_event_id,
            event_type=event_type,
            object_ref=object_ref,
            outcome=outcome,
        )
        self.session.add(entry)
        return entry


class HeldBillingEventDAO(BaseDAO[HeldBillingEvent]):
    """Events held for manual replay or awaiting their target."""

    def __init__(self, session: AsyncSession):
        super().__init__(HeldBillingEvent, session)

    async def get_by_event_id(self, external_event_id: str) -> Optional[HeldBillingEvent]:
        return await self.get_by_field("external_event_id", external_event_id)

    async def hold(
        self,
        external_event_id: str,
        event_type: str,
        object_ref: Optional[str],
        reason: HeldReason,
        envelope: Dict[str, Any],
        detail: Optional[str] = None,
    ) -> HeldBillingEvent:
        """
        Hold an event, or bump the attempt count of an existing hold.

        Returns:
            The held row with its current attempt count
        """
        held = await self.get_by_event_id(external_event_id)
        if held is None:
            return await self.create(
                external_event_id=external_event_id,
                event_type=event_type,
                object_ref=object_ref,
                reason=reason,
                envelope=envelope,
                detail=detail,
                attempts=1,
            )

        held.reason = reason
        held.detail = detail
        held.envelope = envelope
        held.attempts = held.attempts + 1
        held.resolved_at = None
        await self.flush()
        return held

    async def count_unresolved_for_object(self, object_ref: str, reason: HeldReason) -> int:
        """Count unresolved held attempts for one object ref."""
        result = await self.session.execute(
            select(HeldBillingEvent.attempts).where(
                HeldBillingEvent.object_ref == object_ref,
                HeldBillingEvent.reason == reason,
                HeldBillingEvent.resolved_at.is_(None),
            )
        )
        return sum(result.scalars().all())

    async def get_unresolved(self, limit: int = 100) -> List[HeldBillingEvent]:
        """List held events not yet replayed, oldest first."""
        result = await self.session.execute(
            select(HeldBillingEvent)
            .where(HeldBillingEvent.resolved_at.is_(None))
            .order_by(HeldBillingEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_resolved(self, external_event_id: str, resolved_at: datetime) -> bool:
        """Mark a held event as resolved; returns False if it was never held."""
        held = await self.get_by_event_id(external_event_id)
        if held is None or held.resolved_at is not None:
            return False
        held.resolved_at = resolved_at
        await self.flush()
        return True


class InvoicePaymentDAO(BaseDAO[InvoicePayment]):
    """Additive payment ledger."""

    def __init__(self, session: AsyncSession):
        super().__init__(InvoicePayment, session)

    async def append(
        self,
        external_event_id: str,
        invoice_id: str,
        external_subscription_id: Optional[str],
        outcome: PaymentOutcome,
        amount: int,
        currency: Optional[str],
        attempt_count: int,
    ) -> InvoicePayment:
        return await self.create(
            external_event_id=external_event_id,
            invoice_id=invoice_id,
            external_subscription_id=external_subscription_id,
            outcome=outcome,
            amount=amount,
            currency=currency,
            attempt_count=attempt_count,
        )

    async def list_for_subscription(self, external_subscription_id: str) -> List[InvoicePayment]:
        result = await self.session.execute(
            select(InvoicePayment)
            .where(InvoicePayment.external_subscription_id == external_subscription_id)
            .order_by(InvoicePayment.id)
        )
        return list(result.scalars().all())
