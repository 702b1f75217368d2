"""
Billing event bookkeeping models.

WHY: The billing provider delivers webhooks at least once and in any order.
Three tables make that safe:

1. processed_billing_events: the idempotency ledger. The unique constraint
   on external_event_id is what makes check-then-insert atomic: the second
   of two concurrent deliveries fails its commit and is reported as a
   duplicate.
2. held_billing_events: events we could not apply (malformed, or their
   target does not exist yet). Kept with the raw envelope so an operator
   can replay them; never silently dropped.
3. invoice_payments: additive payment ledger. Rows are appended for every
   payment outcome, even when the status change carried by the same event
   is stale.
"""

import enum

from sqlalchemy import Column, Integer, String, Text, Enum, JSON, UniqueConstraint

from partner_access.models.base import Base, TimestampMixin, PrimaryKeyMixin, UTCDateTime, utcnow


class HeldReason(str, enum.Enum):
    """Why an event is held."""

    INVALID = "invalid"
    MISSING_TARGET = "missing_target"


class PaymentOutcome(str, enum.Enum):
    """Invoice payment result."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProcessedBillingEvent(Base, PrimaryKeyMixin):
    """Idempotency ledger entry: one row per applied provider event id."""

    __tablename__ = "processed_billing_events"

    external_event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False)
    object_ref = Column(String(255), nullable=True, index=True)
    outcome = Column(String(50), nullable=False)
    processed_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ProcessedBillingEvent({self.external_event_id}, outcome={self.outcome})>"


class HeldBillingEvent(Base, PrimaryKeyMixin, TimestampMixin):
    """An event awaiting manual replay or a missing target."""

    __tablename__ = "held_billing_events"

    external_event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False)
    object_ref = Column(String(255), nullable=True, index=True)
    reason = Column(Enum(HeldReason), nullable=False)
    detail = Column(Text, nullable=True)
    envelope = Column(JSON, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=1)
    resolved_at = Column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<HeldBillingEvent({self.external_event_id}, reason={self.reason}, "
            f"attempts={self.attempts})>"
        )


class InvoicePayment(Base, PrimaryKeyMixin, TimestampMixin):
    """A payment attempt reported by the provider for an invoice."""

    __tablename__ = "invoice_payments"

    external_event_id = Column(String(255), nullable=False)
    invoice_id = Column(String(255), nullable=False, index=True)
    external_subscription_id = Column(String(255), nullable=True, index=True)
    outcome = Column(Enum(PaymentOutcome), nullable=False)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("invoice_id", "external_event_id", name="uq_invoice_payment_event"),
    )

    def __repr__(self) -> str:
        return f"<InvoicePayment(invoice={self.invoice_id}, outcome={self.outcome})>"
