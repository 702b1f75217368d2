"""
Billing Event Reconciler.

WHAT: Applies billing-provider events (subscription and invoice webhooks)
to entitlement snapshots, provisioning the organization on the first
subscription of a new owner.

WHY: The provider delivers events at least once and in any order. Applied
naively, a replayed event doubles its effect and a late event overwrites
newer state. Each event is therefore:
1. Checked against the idempotency ledger (duplicates are a no-op success)
2. Resolved to its snapshot by provider subscription id
3. Discarded as stale if the snapshot already reflects a newer event
4. Translated into exactly one store patch (full limits set or status)
5. Committed together with its ledger row in one transaction
Owner notifications are requested only after the commit.

HOW:
- In-process, events for one subscription are serialized by a keyed
  asyncio.Lock. Across processes the ledger's unique constraint and the
  snapshot version column decide; a lost race rolls back and retries.
- Plan catalog lookups happen before the lock and the transaction.
- Malformed events are held with their raw envelope for replay. Events
  whose target does not exist yet are counted and escalated after
  repeated occurrence.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from partner_access.core.config import settings
from partner_access.core.exceptions import (
    AppException,
    ConcurrencyConflict,
    NotFoundError,
    ValidationError,
)
from partner_access.dao.billing_event import (
    HeldBillingEventDAO,
    InvoicePaymentDAO,
    ProcessedBillingEventDAO,
)
from partner_access.dao.organization import MemberDAO, OrganizationDAO
from partner_access.models.base import utcnow
from partner_access.models.billing_event import HeldReason, PaymentOutcome
from partner_access.models.entitlement import (
    ENTITLED_STATUSES,
    EntitlementSnapshot,
    EntitlementStatus,
)
from partner_access.models.organization import Organization
from partner_access.schemas.billing import (
    INVOICE_PAYMENT_TYPES,
    NOTIFICATION_ONLY_TYPES,
    BillingEvent,
    BillingEventType,
    InvoicePayload,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionPayload,
    parse_payload,
)
from partner_access.schemas.entitlement import (
    EntitlementPatch,
    LimitsReplacement,
    StatusUpdate,
    UsageCounters,
)
from partner_access.services.entitlement_store import EntitlementStore
from partner_access.services.notification_service import (
    NotificationDispatcher,
    NotificationTemplate,
    get_notification_dispatcher,
)
from partner_access.services.plan_catalog import PlanCatalog, ResolvedPlan

logger = logging.getLogger(__name__)

SUBSCRIPTION_TYPES = frozenset(
    {
        BillingEventType.SUBSCRIPTION_CREATED,
        BillingEventType.SUBSCRIPTION_UPDATED,
        BillingEventType.SUBSCRIPTION_DELETED,
        BillingEventType.SUBSCRIPTION_TRIAL_WILL_END,
    }
)

NOTIFICATION_TEMPLATES = {
    BillingEventType.SUBSCRIPTION_TRIAL_WILL_END: NotificationTemplate.TRIAL_WILL_END,
    BillingEventType.INVOICE_UPCOMING: NotificationTemplate.INVOICE_UPCOMING,
    BillingEventType.INVOICE_FINALIZED: NotificationTemplate.INVOICE_FINALIZED,
}

RECOVERABLE_STATUSES = frozenset({EntitlementStatus.PAST_DUE, EntitlementStatus.INCOMPLETE})

PLAN_BEARING_TYPES = frozenset(
    {BillingEventType.SUBSCRIPTION_CREATED, BillingEventType.SUBSCRIPTION_UPDATED}
)

Notification = Tuple[str, NotificationTemplate, Dict[str, Any]]


@dataclass
class _PreparedEvent:
    """Event payload validated and plan resolved, ready for the transaction."""

    event: BillingEvent
    kind: Optional[BillingEventType]
    subscription: Optional[SubscriptionPayload] = None
    invoice: Optional[InvoicePayload] = None
    plan: Optional[ResolvedPlan] = None


@dataclass
class _Transition:
    """What one unit of work decided, plus notifications to send after commit."""

    outcome: ReconcileOutcome
    organization_id: Optional[int] = None
    status: Optional[EntitlementStatus] = None
    notifications: List[Notification] = field(default_factory=list)


class BillingEventReconciler:
    """
    Idempotent, staleness-aware application of billing events.

    Attributes:
        max_conflict_retries: Retries of a unit of work that lost a race
        not_found_threshold: Missing-target occurrences per object ref
            before escalation
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        notifier: Optional[NotificationDispatcher] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_conflict_retries: Optional[int] = None,
        not_found_threshold: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.notifier = notifier or get_notification_dispatcher()
        self._clock = clock
        self.max_conflict_retries = (
            max_conflict_retries
            if max_conflict_retries is not None
            else settings.RECONCILER_MAX_CONFLICT_RETRIES
        )
        self.not_found_threshold = (
            not_found_threshold
            if not_found_threshold is not None
            else settings.BILLING_NOT_FOUND_ESCALATION_THRESHOLD
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    # ========================================================================
    # Public API
    # ========================================================================

    async def process(self, event: BillingEvent) -> ReconcileResult:
        """
        Process one billing event.

        Args:
            event: Provider-neutral event envelope

        Returns:
            ReconcileResult with outcome applied, duplicate, stale,
            notified or ignored

        Raises:
            ValidationError: Malformed payload; the event is held for replay
            NotFoundError: Update-type event for an unknown subscription
            ConcurrencyConflict: Lost the race more than max_conflict_retries
                times; the provider should redeliver
        """
        extra = self._log_extra(event)
        logger.info(f"Billing event received: {event.type}", extra=extra)

        if await self._already_processed(event.external_event_id):
            logger.info("Duplicate billing event, skipping", extra=extra)
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE, event_id=event.external_event_id
            )

        try:
            prepared = await self._prepare(event)
        except ValidationError as e:
            await self._hold_invalid(event, e)
            raise

        async with self._object_lock(event.object_ref or event.external_event_id):
            attempt = 0
            while True:
                try:
                    return await self._apply(prepared)
                except ConcurrencyConflict:
                    attempt += 1
                    if attempt > self.max_conflict_retries:
                        logger.warning(
                            "Billing event lost concurrency race, giving up",
                            extra={**extra, "attempts": attempt},
                        )
                        raise
                    logger.info(
                        "Billing event lost concurrency race, retrying",
                        extra={**extra, "attempt": attempt},
                    )
                except ValidationError as e:
                    await self._hold_invalid(event, e)
                    raise
                except NotFoundError as e:
                    await self._record_missing_target(event, e)
                    raise

    async def replay_held(self, external_event_id: str) -> ReconcileResult:
        """
        Re-run a held event and mark it resolved on success.

        Raises:
            NotFoundError: If no unresolved held event has that id
            Whatever process() raises if the event still cannot be applied
        """
        async with self.session_factory() as session:
            held = await HeldBillingEventDAO(session).get_by_event_id(external_event_id)

        if held is None or held.resolved_at is not None:
            raise NotFoundError(
                "No held billing event to replay",
                event_id=external_event_id,
            )

        event = BillingEvent.from_envelope(held.envelope)
        logger.info(
            "Replaying held billing event",
            extra={**self._log_extra(event), "held_reason": held.reason.value},
        )
        result = await self.process(event)

        async with self.session_factory() as session, session.begin():
            await HeldBillingEventDAO(session).mark_resolved(external_event_id, self._clock())

        return result

    # ========================================================================
    # Unit of work
    # ========================================================================

    async def _apply(self, prepared: _PreparedEvent) -> ReconcileResult:
        event = prepared.event
        try:
            async with self.session_factory() as session, session.begin():
                ledger = ProcessedBillingEventDAO(session)
                if await ledger.is_processed(event.external_event_id):
                    logger.info("Duplicate billing event, skipping", extra=self._log_extra(event))
                    return ReconcileResult(
                        outcome=ReconcileOutcome.DUPLICATE, event_id=event.external_event_id
                    )

                transition = await self._transition(session, prepared)

                ledger.record(
                    external_event_id=event.external_event_id,
                    event_type=event.type,
                    object_ref=event.object_ref,
                    outcome=transition.outcome.value,
                )
                await HeldBillingEventDAO(session).mark_resolved(
                    event.external_event_id, self._clock()
                )
        except IntegrityError as e:
            if await self._already_processed(event.external_event_id):
                logger.info(
                    "Concurrent duplicate billing event won, skipping",
                    extra=self._log_extra(event),
                )
                return ReconcileResult(
                    outcome=ReconcileOutcome.DUPLICATE, event_id=event.external_event_id
                )
            raise ConcurrencyConflict(
                "Concurrent write while applying billing event",
                event_id=event.external_event_id,
            ) from e
        except StaleDataError as e:
            raise ConcurrencyConflict(
                "Entitlement snapshot modified concurrently",
                event_id=event.external_event_id,
            ) from e

        logger.info(
            f"Billing event {transition.outcome.value}",
            extra={
                **self._log_extra(event),
                "outcome": transition.outcome.value,
                "organization_id": transition.organization_id,
                "status": transition.status.value if transition.status else None,
            },
        )

        for owner_user_id, template, context in transition.notifications:
            await self.notifier.send(owner_user_id, template, context)

        return ReconcileResult(
            outcome=transition.outcome,
            event_id=event.external_event_id,
            organization_id=transition.organization_id,
            status=transition.status,
        )

    async def _transition(self, session: AsyncSession, prepared: _PreparedEvent) -> _Transition:
        event = prepared.event
        kind = prepared.kind

        if kind is None:
            logger.info(f"Unhandled billing event type: {event.type}", extra=self._log_extra(event))
            return _Transition(outcome=ReconcileOutcome.IGNORED)

        if event.object_ref is None:
            # Invoices outside a subscription carry no entitlement
            logger.info("Billing event has no subscription, ignoring", extra=self._log_extra(event))
            return _Transition(outcome=ReconcileOutcome.IGNORED)

        store = EntitlementStore(session)
        snapshot = await store.get_by_subscription(event.object_ref)

        if snapshot is None:
            if kind == BillingEventType.SUBSCRIPTION_CREATED:
                return await self._provision(session, store, prepared)
            raise NotFoundError(
                "No entitlement snapshot for subscription",
                event_id=event.external_event_id,
                object_ref=event.object_ref,
                event_type=event.type,
            )

        organization = await OrganizationDAO(session).get_by_id(snapshot.organization_id)

        if kind in NOTIFICATION_ONLY_TYPES:
            return _Transition(
                outcome=ReconcileOutcome.NOTIFIED,
                organization_id=snapshot.organization_id,
                status=snapshot.status,
                notifications=[
                    self._notification(
                        organization, NOTIFICATION_TEMPLATES[kind], snapshot, prepared
                    )
                ],
            )

        if kind in INVOICE_PAYMENT_TYPES:
            await self._append_payment(session, prepared)

        if self._is_stale(snapshot, event):
            logger.info(
                "Stale billing event discarded",
                extra={
                    **self._log_extra(event),
                    "last_applied_event_at": snapshot.last_applied_event_at.isoformat(),
                },
            )
            return _Transition(
                outcome=ReconcileOutcome.STALE,
                organization_id=snapshot.organization_id,
                status=snapshot.status,
            )

        patch, template = self._patch_for(kind, snapshot, prepared)
        if patch is None:
            return _Transition(
                outcome=ReconcileOutcome.APPLIED,
                organization_id=snapshot.organization_id,
                status=snapshot.status,
            )

        view = await store.upsert_from_reconciler(
            snapshot.organization_id,
            patch,
            external_subscription_id=event.object_ref,
            event_at=event.timestamp,
        )

        notifications = []
        if template is not None:
            notifications.append(self._notification(organization, template, snapshot, prepared))

        return _Transition(
            outcome=ReconcileOutcome.APPLIED,
            organization_id=snapshot.organization_id,
            status=view.status,
            notifications=notifications,
        )

    def _patch_for(
        self,
        kind: BillingEventType,
        snapshot: EntitlementSnapshot,
        prepared: _PreparedEvent,
    ) -> Tuple[Optional[EntitlementPatch], Optional[NotificationTemplate]]:
        """Translate an event into one store patch and the owner notification it warrants."""
        if kind in PLAN_BEARING_TYPES:
            status_update = self._status_update_from(prepared.subscription)
            plan = prepared.plan

            if plan is not None and plan.slug != snapshot.plan_slug:
                return (
                    LimitsReplacement(
                        plan_slug=plan.slug, limits=plan.limits, status_update=status_update
                    ),
                    NotificationTemplate.PLAN_CHANGED,
                )

            if plan is None:
                logger.warning(
                    "Subscription price does not map to a catalog plan, keeping limits",
                    extra={
                        **self._log_extra(prepared.event),
                        "price_id": prepared.subscription.price_id,
                    },
                )

            template = None
            if (
                snapshot.status not in ENTITLED_STATUSES
                and prepared.subscription.status in ENTITLED_STATUSES
            ):
                template = NotificationTemplate.SUBSCRIPTION_ACTIVATED
            return status_update, template

        if kind == BillingEventType.SUBSCRIPTION_DELETED:
            return (
                StatusUpdate(status=EntitlementStatus.CANCELED, period_end=self._clock()),
                NotificationTemplate.SUBSCRIPTION_CANCELED,
            )

        if kind == BillingEventType.INVOICE_PAYMENT_SUCCEEDED:
            if snapshot.status in RECOVERABLE_STATUSES:
                return (
                    StatusUpdate(status=EntitlementStatus.ACTIVE),
                    NotificationTemplate.PAYMENT_RECOVERED,
                )
            return None, None

        if kind == BillingEventType.INVOICE_PAYMENT_FAILED:
            return (
                StatusUpdate(status=EntitlementStatus.PAST_DUE),
                NotificationTemplate.PAYMENT_FAILED,
            )

        return None, None

    async def _provision(
        self,
        session: AsyncSession,
        store: EntitlementStore,
        prepared: _PreparedEvent,
    ) -> _Transition:
        """
        Attach a first snapshot, creating the organization if the owner has none.

        The owner lookup runs inside this transaction; together with the
        unique owner_user_id it keeps duplicate concurrent deliveries from
        creating two organizations.
        """
        event = prepared.event
        payload = prepared.subscription
        metadata = payload.metadata
        org_dao = OrganizationDAO(session)

        organization: Optional[Organization] = None
        if metadata.organization_id is not None:
            organization = await org_dao.get_by_id(metadata.organization_id)
            if organization is None:
                raise ValidationError(
                    "Subscription metadata references an unknown organization",
                    event_id=event.external_event_id,
                    organization_id=metadata.organization_id,
                )
        if organization is None and metadata.user_id:
            organization = await org_dao.get_by_owner_user_id(metadata.user_id)
        if organization is None and not metadata.user_id:
            raise ValidationError(
                "Subscription metadata has no user_id",
                event_id=event.external_event_id,
                object_ref=event.object_ref,
            )
        if prepared.plan is None:
            raise ValidationError(
                "Subscription price does not map to a catalog plan",
                event_id=event.external_event_id,
                price_id=payload.price_id,
                plan=metadata.plan,
            )

        if organization is None:
            name = metadata.organization_name or f"Organization {metadata.user_id}"
            organization = await org_dao.create_with_owner(
                owner_user_id=metadata.user_id, name=name
            )
            logger.info(
                "Provisioned organization for new subscriber",
                extra={
                    **self._log_extra(event),
                    "organization_id": organization.id,
                    "owner_user_id": metadata.user_id,
                },
            )

        existing = await store.dao.get_by_organization_id(organization.id)
        if existing is not None and self._is_stale(existing, event):
            logger.info("Stale subscription creation discarded", extra=self._log_extra(event))
            return _Transition(
                outcome=ReconcileOutcome.STALE,
                organization_id=organization.id,
                status=existing.status,
            )

        member_count = await MemberDAO(session).count(organization_id=organization.id)
        view = await store.upsert_from_reconciler(
            organization.id,
            LimitsReplacement(
                plan_slug=prepared.plan.slug,
                limits=prepared.plan.limits,
                status_update=self._status_update_from(payload),
            ),
            external_subscription_id=payload.id,
            event_at=event.timestamp,
            initial_usage=UsageCounters(current_members=member_count),
        )

        return _Transition(
            outcome=ReconcileOutcome.APPLIED,
            organization_id=organization.id,
            status=view.status,
            notifications=[
                (
                    organization.owner_user_id,
                    NotificationTemplate.SUBSCRIPTION_ACTIVATED,
                    {
                        "organization_id": organization.id,
                        "organization_name": organization.name,
                        "plan": prepared.plan.slug,
                        "status": view.status.value,
                        "url": self.notifier.dashboard_url("/subscription"),
                    },
                )
            ],
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _prepare(self, event: BillingEvent) -> _PreparedEvent:
        """Validate the payload and resolve the plan, outside any lock or transaction."""
        kind = event.known_type
        prepared = _PreparedEvent(event=event, kind=kind)

        if kind in SUBSCRIPTION_TYPES:
            prepared.subscription = parse_payload(
                SubscriptionPayload, event.payload, event_id=event.external_event_id
            )
            if event.object_ref is None:
                raise ValidationError(
                    "Subscription event has no subscription id",
                    event_id=event.external_event_id,
                )
            if kind in PLAN_BEARING_TYPES:
                prepared.plan = await self.catalog.resolve_plan(prepared.subscription.price_id)
                if prepared.plan is None:
                    prepared.plan = await self.catalog.resolve_plan(
                        prepared.subscription.metadata.plan
                    )
        elif kind is not None:
            prepared.invoice = parse_payload(
                InvoicePayload, event.payload, event_id=event.external_event_id
            )
            if kind in INVOICE_PAYMENT_TYPES and not prepared.invoice.id:
                raise ValidationError(
                    "Invoice payment event has no invoice id",
                    event_id=event.external_event_id,
                )

        return prepared

    @staticmethod
    def _status_update_from(payload: SubscriptionPayload) -> StatusUpdate:
        return StatusUpdate(
            status=payload.status,
            period_start=payload.current_period_start,
            period_end=payload.current_period_end,
            cancel_at_period_end=payload.cancel_at_period_end,
            trial_start=payload.trial_start,
            trial_end=payload.trial_end,
        )

    @staticmethod
    def _is_stale(snapshot: EntitlementSnapshot, event: BillingEvent) -> bool:
        return (
            snapshot.last_applied_event_at is not None
            and snapshot.last_applied_event_at >= event.timestamp
        )

    async def _append_payment(self, session: AsyncSession, prepared: _PreparedEvent) -> None:
        """Record the payment attempt. Additive, so never subject to staleness."""
        invoice = prepared.invoice
        succeeded = prepared.kind == BillingEventType.INVOICE_PAYMENT_SUCCEEDED
        await InvoicePaymentDAO(session).append(
            external_event_id=prepared.event.external_event_id,
            invoice_id=invoice.id,
            external_subscription_id=invoice.subscription,
            outcome=PaymentOutcome.SUCCEEDED if succeeded else PaymentOutcome.FAILED,
            amount=invoice.amount_paid if succeeded else invoice.amount_due,
            currency=invoice.currency,
            attempt_count=invoice.attempt_count,
        )

    def _notification(
        self,
        organization: Organization,
        template: NotificationTemplate,
        snapshot: EntitlementSnapshot,
        prepared: _PreparedEvent,
    ) -> Notification:
        context: Dict[str, Any] = {
            "organization_id": organization.id,
            "organization_name": organization.name,
            "plan": prepared.plan.slug if prepared.plan else snapshot.plan_slug,
            "url": self.notifier.dashboard_url("/subscription"),
        }
        if prepared.invoice is not None:
            context.update(
                invoice_id=prepared.invoice.id,
                amount_due=prepared.invoice.amount_due,
                currency=prepared.invoice.currency,
                attempt_count=prepared.invoice.attempt_count,
            )
        if prepared.subscription is not None and prepared.subscription.trial_end is not None:
            context["trial_end"] = prepared.subscription.trial_end.isoformat()
        return organization.owner_user_id, template, context

    async def _already_processed(self, external_event_id: str) -> bool:
        async with self.session_factory() as session:
            return await ProcessedBillingEventDAO(session).is_processed(external_event_id)

    async def _hold_invalid(self, event: BillingEvent, error: AppException) -> None:
        async with self.session_factory() as session, session.begin():
            held = await HeldBillingEventDAO(session).hold(
                external_event_id=event.external_event_id,
                event_type=event.type,
                object_ref=event.object_ref,
                reason=HeldReason.INVALID,
                envelope=event.to_envelope(),
                detail=error.message,
            )
        logger.warning(
            f"Billing event held for replay: {error.message}",
            extra={**self._log_extra(event), "attempts": held.attempts},
        )

    async def _record_missing_target(self, event: BillingEvent, error: AppException) -> None:
        """Count a missing-target occurrence and escalate when the threshold is reached."""
        async with self.session_factory() as session, session.begin():
            dao = HeldBillingEventDAO(session)
            await dao.hold(
                external_event_id=event.external_event_id,
                event_type=event.type,
                object_ref=event.object_ref,
                reason=HeldReason.MISSING_TARGET,
                envelope=event.to_envelope(),
                detail=error.message,
            )
            occurrences = await dao.count_unresolved_for_object(
                event.object_ref, HeldReason.MISSING_TARGET
            )

        extra = {**self._log_extra(event), "occurrences": occurrences}
        logger.warning("Billing event target not found", extra=extra)
        if occurrences == self.not_found_threshold:
            logger.error(
                "Billing events keep arriving for an unknown subscription",
                extra={**extra, "threshold": self.not_found_threshold},
            )

    @asynccontextmanager
    async def _object_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize in-process work per subscription; drops the lock when unused."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @staticmethod
    def _log_extra(event: BillingEvent) -> Dict[str, Any]:
        return {
            "event_id": event.external_event_id,
            "event_type": event.type,
            "object_ref": event.object_ref,
        }
