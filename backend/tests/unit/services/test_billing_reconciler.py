"""
Unit tests for BillingEventReconciler.

WHAT: Tests application of subscription and invoice events to entitlement
snapshots.

WHY: Verifies that:
1. Replayed events are no-ops and out-of-order events never regress state
2. A first subscription provisions exactly one organization per owner
3. Plan changes replace the whole limits block at once
4. Payment failure and recovery move the status through past_due
5. Malformed events are held and events for unknown targets are counted
6. Owner notifications go out after commit and never fail processing

HOW: Real reconciler against a file-backed SQLite database, Stripe-shaped
events from the factories, in-memory notification channel.
"""

import asyncio
import logging

import pytest
import pytest_asyncio
from sqlalchemy import select

from partner_access.core.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    NotificationDeliveryError,
    ValidationError,
)
from partner_access.dao.billing_event import (
    HeldBillingEventDAO,
    InvoicePaymentDAO,
    ProcessedBillingEventDAO,
)
from partner_access.dao.organization import OrganizationDAO
from partner_access.models.billing_event import HeldReason, PaymentOutcome
from partner_access.models.entitlement import EntitlementStatus
from partner_access.models.member import MemberRole
from partner_access.models.organization import Organization, OrganizationStatus
from partner_access.models.plan import SubscriptionPlan
from partner_access.schemas.billing import ReconcileOutcome
from partner_access.schemas.entitlement import effective_entitlement
from partner_access.services.access_resolver import resolve
from partner_access.schemas.access import Capability
from partner_access.services.billing_reconciler import BillingEventReconciler
from partner_access.services.entitlement_store import EntitlementStore
from partner_access.services.plan_catalog import PlanCatalog
from partner_access.services.notification_service import (
    InMemoryNotificationChannel,
    NotificationDispatcher,
    NotificationTemplate,
)
from tests.factories import (
    OrganizationFactory,
    PlanFactory,
    SnapshotFactory,
    StripeEventFactory,
    at,
)

SUB = "sub_test"


@pytest_asyncio.fixture
async def catalog_plans(db_session):
    return await PlanFactory.create_catalog(db_session)


async def process(reconciler, provider_event):
    return await reconciler.process(StripeEventFactory.envelope(provider_event))


def created_event(user_id="user_new", minutes=0, **kwargs):
    kwargs.setdefault("metadata", {"user_id": user_id})
    return StripeEventFactory.subscription(
        event_type="customer.subscription.created",
        subscription_id=kwargs.pop("subscription_id", SUB),
        created=at(minutes),
        **kwargs,
    )


def updated_event(minutes, price_id="price_starter_monthly", status="active", **kwargs):
    return StripeEventFactory.subscription(
        event_type="customer.subscription.updated",
        subscription_id=kwargs.pop("subscription_id", SUB),
        created=at(minutes),
        price_id=price_id,
        status=status,
        **kwargs,
    )


async def snapshot_view(session_factory, organization_id):
    async with session_factory() as session:
        return await EntitlementStore(session).get(organization_id)


async def ledger_outcome(session_factory, event_id):
    async with session_factory() as session:
        entry = await ProcessedBillingEventDAO(session).get_by_event_id(event_id)
        return entry.outcome if entry else None


class TestProvisioning:
    """First subscription of an owner."""

    @pytest.mark.asyncio
    async def test_creates_organization_and_snapshot(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        event = created_event(user_id="user_new", status="trialing")

        result = await process(reconciler, event)

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.status == EntitlementStatus.TRIALING

        async with session_factory() as session:
            organization = await OrganizationDAO(session).get_by_owner_user_id("user_new")
        assert organization.id == result.organization_id
        assert organization.status == OrganizationStatus.IDLE

        view = await snapshot_view(session_factory, organization.id)
        assert view.plan_ref.slug == "starter"
        assert view.plan_ref.external_subscription_id == SUB
        assert view.limits.max_listings == 5
        assert view.usage.current_members == 1
        assert view.last_applied_event_at == at(0)

        assert await ledger_outcome(session_factory, event["id"]) == "applied"
        assert notification_channel.templates() == [NotificationTemplate.SUBSCRIPTION_ACTIVATED]
        assert notification_channel.sent[0].owner_user_id == "user_new"

    @pytest.mark.asyncio
    async def test_attaches_to_existing_owned_organization(
        self, reconciler, db_session, session_factory, catalog_plans
    ):
        organization = await OrganizationFactory.create(
            db_session, owner_user_id="user_owner", status=OrganizationStatus.ACTIVE
        )

        result = await process(reconciler, created_event(user_id="user_owner"))

        assert result.organization_id == organization.id
        async with session_factory() as session:
            assert await OrganizationDAO(session).count() == 1

    @pytest.mark.asyncio
    async def test_metadata_organization_id_wins(
        self, reconciler, db_session, catalog_plans
    ):
        organization = await OrganizationFactory.create(db_session)

        result = await process(
            reconciler,
            created_event(metadata={"organization_id": str(organization.id)}),
        )

        assert result.organization_id == organization.id

    @pytest.mark.asyncio
    async def test_organization_name_from_metadata(
        self, reconciler, session_factory, catalog_plans
    ):
        result = await process(
            reconciler,
            created_event(metadata={"user_id": "user_n", "organization_name": "Harbour Stays"}),
        )

        async with session_factory() as session:
            organization = await OrganizationDAO(session).get_by_id(result.organization_id)
        assert organization.name == "Harbour Stays"
        assert organization.slug == "harbour-stays"

    @pytest.mark.asyncio
    async def test_plan_from_metadata_when_price_unknown(
        self, reconciler, session_factory, catalog_plans
    ):
        result = await process(
            reconciler,
            created_event(price_id="price_elsewhere", metadata={"user_id": "u", "plan": "growth"}),
        )

        view = await snapshot_view(session_factory, result.organization_id)
        assert view.plan_ref.slug == "growth"

    @pytest.mark.asyncio
    async def test_duplicate_concurrent_delivery_creates_one_organization(
        self, reconciler, session_factory, catalog_plans
    ):
        event = created_event(user_id="user_race")
        envelope = StripeEventFactory.envelope(event)

        results = await asyncio.gather(reconciler.process(envelope), reconciler.process(envelope))

        outcomes = sorted(result.outcome.value for result in results)
        assert outcomes == ["applied", "duplicate"]
        async with session_factory() as session:
            rows = await session.execute(
                select(Organization).where(Organization.owner_user_id == "user_race")
            )
            assert len(rows.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_unknown_metadata_organization_is_held(
        self, reconciler, session_factory, catalog_plans
    ):
        event = created_event(metadata={"organization_id": "9999"})

        with pytest.raises(ValidationError):
            await process(reconciler, event)

        async with session_factory() as session:
            held = await HeldBillingEventDAO(session).get_by_event_id(event["id"])
        assert held.reason == HeldReason.INVALID
        assert await ledger_outcome(session_factory, event["id"]) is None

    @pytest.mark.asyncio
    async def test_missing_user_id_is_held(self, reconciler, session_factory, catalog_plans):
        event = created_event(metadata={})

        with pytest.raises(ValidationError):
            await process(reconciler, event)

        async with session_factory() as session:
            assert await OrganizationDAO(session).count() == 0
            assert await HeldBillingEventDAO(session).get_by_event_id(event["id"]) is not None

    @pytest.mark.asyncio
    async def test_unresolvable_plan_is_held(self, reconciler, session_factory, catalog_plans):
        event = created_event(price_id="price_elsewhere")

        with pytest.raises(ValidationError):
            await process(reconciler, event)

        async with session_factory() as session:
            assert await OrganizationDAO(session).count() == 0


class TestIdempotence:
    """At-least-once delivery."""

    @pytest.mark.asyncio
    async def test_replayed_event_is_duplicate(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        event = created_event()
        first = await process(reconciler, event)
        notification_channel.clear()

        second = await process(reconciler, event)

        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert notification_channel.sent == []
        view = await snapshot_view(session_factory, first.organization_id)
        assert view.version == 1

    @pytest.mark.asyncio
    async def test_replayed_payment_appends_once(
        self, reconciler, session_factory, catalog_plans
    ):
        await process(reconciler, created_event())
        failed = StripeEventFactory.invoice(created=at(5))

        await process(reconciler, failed)
        await process(reconciler, failed)

        async with session_factory() as session:
            assert len(await InvoicePaymentDAO(session).list_for_subscription(SUB)) == 1

    @pytest.mark.asyncio
    async def test_ledger_written_with_effect(self, reconciler, session_factory, catalog_plans):
        event = created_event()

        await process(reconciler, event)

        assert await ledger_outcome(session_factory, event["id"]) == "applied"

    @pytest.mark.asyncio
    async def test_ledger_row_committed_elsewhere_mid_apply(
        self, reconciler, session_factory, catalog_plans, monkeypatch
    ):
        """Another process records the event after our ledger check; ours rolls back."""
        await process(reconciler, created_event())
        event = updated_event(5, status="past_due")
        original = reconciler._transition

        async def other_process_wins(session, prepared):
            async with session_factory() as other, other.begin():
                ProcessedBillingEventDAO(other).record(
                    event["id"], "subscription.updated", SUB, "applied"
                )
            return await original(session, prepared)

        monkeypatch.setattr(reconciler, "_transition", other_process_wins)

        result = await process(reconciler, event)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        async with session_factory() as session:
            snapshot = await EntitlementStore(session).get_by_subscription(SUB)
        assert snapshot.status == EntitlementStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_two_processes_deliver_same_first_event(
        self, session_factory, notifier, catalog_plans
    ):
        first = BillingEventReconciler(session_factory, PlanCatalog(session_factory), notifier)
        second = BillingEventReconciler(session_factory, PlanCatalog(session_factory), notifier)
        envelope = StripeEventFactory.envelope(created_event(user_id="user_two_procs"))

        results = await asyncio.gather(first.process(envelope), second.process(envelope))

        outcomes = sorted(result.outcome.value for result in results)
        assert outcomes == ["applied", "duplicate"]
        async with session_factory() as session:
            rows = await session.execute(
                select(Organization).where(Organization.owner_user_id == "user_two_procs")
            )
            assert len(rows.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_lock_released_after_processing(self, reconciler, catalog_plans):
        await process(reconciler, created_event())

        assert reconciler._locks == {}


class TestOrdering:
    """Out-of-order delivery."""

    @pytest.mark.asyncio
    async def test_older_event_is_stale(
        self, reconciler, session_factory, catalog_plans
    ):
        created = await process(reconciler, created_event())
        await process(reconciler, updated_event(10, status="past_due"))

        older = updated_event(5, status="active")
        result = await process(reconciler, older)

        assert result.outcome == ReconcileOutcome.STALE
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.status == EntitlementStatus.PAST_DUE
        assert view.last_applied_event_at == at(10)
        assert await ledger_outcome(session_factory, older["id"]) == "stale"

    @pytest.mark.asyncio
    async def test_same_timestamp_is_stale(self, reconciler, catalog_plans):
        await process(reconciler, created_event())

        result = await process(reconciler, updated_event(0, status="canceled"))

        assert result.outcome == ReconcileOutcome.STALE

    @pytest.mark.asyncio
    async def test_final_state_independent_of_delivery_order(
        self, reconciler, session_factory, catalog_plans
    ):
        created = await process(reconciler, created_event())
        events = [
            updated_event(20, price_id="price_growth_monthly"),
            updated_event(10, status="past_due"),
            updated_event(15, status="active"),
        ]

        for event in events:
            await process(reconciler, event)

        view = await snapshot_view(session_factory, created.organization_id)
        assert view.plan_ref.slug == "growth"
        assert view.status == EntitlementStatus.ACTIVE
        assert view.last_applied_event_at == at(20)


class TestPlanChange:
    """Plan changes replace the limits block."""

    @pytest.mark.asyncio
    async def test_upgrade_replaces_limits_and_grants_team(
        self, reconciler, db_session, session_factory, catalog_plans, notification_channel
    ):
        organization = await OrganizationFactory.create(
            db_session, owner_user_id="user_owner", status=OrganizationStatus.ACTIVE
        )
        await process(reconciler, created_event(user_id="user_owner"))
        before = await snapshot_view(session_factory, organization.id)
        assert before.limits.max_members == 1
        assert not resolve(OrganizationStatus.ACTIVE, before, MemberRole.ADMIN).can(
            Capability.TEAM
        )
        notification_channel.clear()

        result = await process(reconciler, updated_event(5, price_id="price_growth_monthly"))

        assert result.outcome == ReconcileOutcome.APPLIED
        after = await snapshot_view(session_factory, organization.id)
        assert after.plan_ref.slug == "growth"
        assert after.limits.max_members == 5
        assert after.limits.has_analytics is True
        assert after.limits.extra_listing_cost == 500
        decision = resolve(OrganizationStatus.ACTIVE, after, MemberRole.ADMIN)
        assert decision.can(Capability.TEAM)
        assert decision.can(Capability.ANALYTICS)
        assert notification_channel.templates() == [NotificationTemplate.PLAN_CHANGED]

    @pytest.mark.asyncio
    async def test_catalog_edit_does_not_change_synced_limits(
        self, reconciler, session_factory, catalog_plans
    ):
        created = await process(reconciler, created_event())
        async with session_factory() as session, session.begin():
            plan = await session.get(SubscriptionPlan, catalog_plans["starter"].id)
            plan.max_listings = 500

        view = await snapshot_view(session_factory, created.organization_id)
        assert view.limits.max_listings == 5

    @pytest.mark.asyncio
    async def test_unmapped_price_keeps_limits(
        self, reconciler, session_factory, catalog_plans
    ):
        created = await process(reconciler, created_event())

        result = await process(
            reconciler, updated_event(5, price_id="price_unknown", status="past_due")
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.plan_ref.slug == "starter"
        assert view.status == EntitlementStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_reactivation_notifies(
        self, reconciler, catalog_plans, notification_channel
    ):
        await process(reconciler, created_event(status="incomplete"))
        notification_channel.clear()

        await process(reconciler, updated_event(5, status="active"))

        assert notification_channel.templates() == [NotificationTemplate.SUBSCRIPTION_ACTIVATED]

    @pytest.mark.asyncio
    async def test_deleted_marks_canceled(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        created = await process(reconciler, created_event())

        result = await process(
            reconciler,
            StripeEventFactory.subscription(
                event_type="customer.subscription.deleted",
                subscription_id=SUB,
                status="canceled",
                created=at(30),
            ),
        )

        assert result.status == EntitlementStatus.CANCELED
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.status == EntitlementStatus.CANCELED
        assert effective_entitlement(view).is_default
        assert NotificationTemplate.SUBSCRIPTION_CANCELED in notification_channel.templates()


class TestPayments:
    """Invoice payment events."""

    @pytest.mark.asyncio
    async def test_failure_then_recovery(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        created = await process(reconciler, created_event())
        notification_channel.clear()

        failed = await process(reconciler, StripeEventFactory.invoice(created=at(5)))
        assert failed.status == EntitlementStatus.PAST_DUE

        succeeded = await process(
            reconciler,
            StripeEventFactory.invoice(
                event_type="invoice.payment_succeeded",
                created=at(6),
                amount_paid=2900,
                attempt_count=2,
            ),
        )
        assert succeeded.status == EntitlementStatus.ACTIVE

        view = await snapshot_view(session_factory, created.organization_id)
        assert view.status == EntitlementStatus.ACTIVE
        assert notification_channel.templates() == [
            NotificationTemplate.PAYMENT_FAILED,
            NotificationTemplate.PAYMENT_RECOVERED,
        ]
        async with session_factory() as session:
            payments = await InvoicePaymentDAO(session).list_for_subscription(SUB)
        assert [p.outcome for p in payments] == [PaymentOutcome.FAILED, PaymentOutcome.SUCCEEDED]
        assert payments[1].amount == 2900

    @pytest.mark.asyncio
    async def test_stale_failure_still_records_payment(
        self, reconciler, session_factory, catalog_plans
    ):
        created = await process(reconciler, created_event())
        await process(reconciler, updated_event(10))

        result = await process(reconciler, StripeEventFactory.invoice(created=at(5)))

        assert result.outcome == ReconcileOutcome.STALE
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.status == EntitlementStatus.ACTIVE
        async with session_factory() as session:
            assert len(await InvoicePaymentDAO(session).list_for_subscription(SUB)) == 1

    @pytest.mark.asyncio
    async def test_success_on_active_changes_nothing(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        created = await process(reconciler, created_event())
        notification_channel.clear()

        result = await process(
            reconciler,
            StripeEventFactory.invoice(event_type="invoice.payment_succeeded", created=at(5)),
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert notification_channel.sent == []
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.version == 1

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_ignored(self, reconciler, session_factory):
        event = StripeEventFactory.invoice(subscription_id=None)

        result = await process(reconciler, event)

        assert result.outcome == ReconcileOutcome.IGNORED
        assert await ledger_outcome(session_factory, event["id"]) == "ignored"

    @pytest.mark.asyncio
    async def test_payment_without_invoice_id_is_held(self, reconciler, catalog_plans):
        await process(reconciler, created_event())

        with pytest.raises(ValidationError):
            await process(reconciler, StripeEventFactory.invoice(invoice_id=None, created=at(5)))


class TestNotificationOnlyEvents:
    """Events that only inform the owner."""

    @pytest.mark.asyncio
    async def test_trial_will_end(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        created = await process(reconciler, created_event(status="trialing"))
        notification_channel.clear()

        result = await process(
            reconciler,
            StripeEventFactory.subscription(
                event_type="customer.subscription.trial_will_end",
                subscription_id=SUB,
                status="trialing",
                created=at(60),
                trial_end=at(60 * 24 * 3),
            ),
        )

        assert result.outcome == ReconcileOutcome.NOTIFIED
        assert notification_channel.templates() == [NotificationTemplate.TRIAL_WILL_END]
        assert "trial_end" in notification_channel.sent[0].context
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.last_applied_event_at == at(0)

    @pytest.mark.asyncio
    async def test_redelivered_notice_notifies_once(
        self, reconciler, session_factory, catalog_plans, notification_channel
    ):
        await process(reconciler, created_event(status="trialing"))
        notification_channel.clear()
        notice = StripeEventFactory.subscription(
            event_type="customer.subscription.trial_will_end",
            subscription_id=SUB,
            status="trialing",
            created=at(60),
        )

        first = await process(reconciler, notice)
        second = await process(reconciler, notice)

        assert first.outcome == ReconcileOutcome.NOTIFIED
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert notification_channel.templates() == [NotificationTemplate.TRIAL_WILL_END]
        assert await ledger_outcome(session_factory, notice["id"]) == "notified"

    @pytest.mark.asyncio
    async def test_upcoming_invoice_without_id(
        self, reconciler, catalog_plans, notification_channel
    ):
        await process(reconciler, created_event())
        notification_channel.clear()

        result = await process(
            reconciler,
            StripeEventFactory.invoice(event_type="invoice.upcoming", invoice_id=None),
        )

        assert result.outcome == ReconcileOutcome.NOTIFIED
        assert notification_channel.templates() == [NotificationTemplate.INVOICE_UPCOMING]

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, reconciler, session_factory):
        event = {
            "id": "evt_unknown_type",
            "type": "customer.created",
            "created": int(at().timestamp()),
            "data": {"object": {"id": "cus_1"}},
        }

        result = await process(reconciler, event)

        assert result.outcome == ReconcileOutcome.IGNORED
        assert await ledger_outcome(session_factory, "evt_unknown_type") == "ignored"

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_fail_processing(
        self, session_factory, plan_catalog, catalog_plans
    ):
        channel = InMemoryNotificationChannel(fail_with=NotificationDeliveryError("down"))
        reconciler = BillingEventReconciler(
            session_factory, plan_catalog, NotificationDispatcher(channel)
        )
        event = created_event()

        result = await process(reconciler, event)

        assert result.outcome == ReconcileOutcome.APPLIED
        assert await ledger_outcome(session_factory, event["id"]) == "applied"


class TestMissingTarget:
    """Update-type events for subscriptions we do not know."""

    @pytest.mark.asyncio
    async def test_unknown_subscription_raises_not_found(self, reconciler, session_factory):
        event = updated_event(5, subscription_id="sub_ghost")

        with pytest.raises(NotFoundError):
            await process(reconciler, event)

        async with session_factory() as session:
            held = await HeldBillingEventDAO(session).get_by_event_id(event["id"])
        assert held.reason == HeldReason.MISSING_TARGET
        assert await ledger_outcome(session_factory, event["id"]) is None

    @pytest.mark.asyncio
    async def test_escalates_at_threshold(
        self, session_factory, plan_catalog, notifier, caplog
    ):
        reconciler = BillingEventReconciler(
            session_factory, plan_catalog, notifier, not_found_threshold=2
        )

        with caplog.at_level(logging.WARNING, logger="partner_access.services.billing_reconciler"):
            for minutes in (1, 2):
                with pytest.raises(NotFoundError):
                    await process(reconciler, updated_event(minutes, subscription_id="sub_ghost"))

        escalations = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(escalations) == 1
        assert escalations[0].object_ref == "sub_ghost"
        assert escalations[0].occurrences == 2

    @pytest.mark.asyncio
    async def test_replay_after_target_appears(
        self, reconciler, session_factory, catalog_plans
    ):
        early = updated_event(5, status="past_due")
        with pytest.raises(NotFoundError):
            await process(reconciler, early)
        created = await process(reconciler, created_event())

        result = await reconciler.replay_held(early["id"])

        assert result.outcome == ReconcileOutcome.APPLIED
        view = await snapshot_view(session_factory, created.organization_id)
        assert view.status == EntitlementStatus.PAST_DUE
        async with session_factory() as session:
            held = await HeldBillingEventDAO(session).get_by_event_id(early["id"])
        assert held.resolved_at is not None

    @pytest.mark.asyncio
    async def test_redelivery_after_target_appears_resolves_hold(
        self, reconciler, session_factory, catalog_plans
    ):
        early = updated_event(5, status="past_due")
        with pytest.raises(NotFoundError):
            await process(reconciler, early)
        await process(reconciler, created_event())

        await process(reconciler, early)

        async with session_factory() as session:
            assert await HeldBillingEventDAO(session).get_unresolved() == []

    @pytest.mark.asyncio
    async def test_replay_unknown_event(self, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.replay_held("evt_never_held")


class TestMalformedEvents:
    """Events whose payload fails validation."""

    @pytest.mark.asyncio
    async def test_bad_status_is_held_with_envelope(self, reconciler, session_factory):
        event = updated_event(5, status="exploded")

        with pytest.raises(ValidationError):
            await process(reconciler, event)

        async with session_factory() as session:
            held = await HeldBillingEventDAO(session).get_by_event_id(event["id"])
        assert held.reason == HeldReason.INVALID
        assert held.envelope["external_event_id"] == event["id"]
        assert held.envelope["payload"]["status"] == "exploded"
        assert await ledger_outcome(session_factory, event["id"]) is None

    @pytest.mark.asyncio
    async def test_non_object_items_are_held(self, reconciler, session_factory, catalog_plans):
        await process(reconciler, created_event())
        event = updated_event(5)
        event["data"]["object"]["items"] = ["price_growth_monthly"]

        with pytest.raises(ValidationError):
            await process(reconciler, event)

        async with session_factory() as session:
            held = await HeldBillingEventDAO(session).get_by_event_id(event["id"])
        assert held.reason == HeldReason.INVALID
        assert held.envelope["payload"]["items"] == ["price_growth_monthly"]


class TestConcurrencyRetries:
    """Units of work that lose a race are retried."""

    @pytest.mark.asyncio
    async def test_retries_then_applies(
        self, reconciler, session_factory, catalog_plans, monkeypatch
    ):
        await process(reconciler, created_event())
        original = reconciler._transition
        failures = {"left": 2}

        async def flaky(session, prepared):
            if failures["left"]:
                failures["left"] -= 1
                raise ConcurrencyConflict()
            return await original(session, prepared)

        monkeypatch.setattr(reconciler, "_transition", flaky)

        result = await process(reconciler, updated_event(5, status="past_due"))

        assert result.outcome == ReconcileOutcome.APPLIED
        assert failures["left"] == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(
        self, session_factory, plan_catalog, notifier, catalog_plans, monkeypatch
    ):
        reconciler = BillingEventReconciler(
            session_factory, plan_catalog, notifier, max_conflict_retries=1
        )
        await process(reconciler, created_event())
        calls = {"count": 0}

        async def always_conflicts(session, prepared):
            calls["count"] += 1
            raise ConcurrencyConflict()

        monkeypatch.setattr(reconciler, "_transition", always_conflicts)
        event = updated_event(5, status="past_due")

        with pytest.raises(ConcurrencyConflict):
            await process(reconciler, event)

        assert calls["count"] == 2
        assert await ledger_outcome(session_factory, event["id"]) is None

    @pytest.mark.asyncio
    async def test_stale_snapshot_version_is_conflict(
        self, reconciler, db_session, session_factory, catalog_plans, monkeypatch
    ):
        """A snapshot bumped by another writer mid-transaction forces a retry."""
        organization = await OrganizationFactory.create(db_session)
        await SnapshotFactory.create(db_session, organization, external_subscription_id=SUB)
        original = reconciler._transition
        bumped = {"done": False}

        async def bump_then_apply(session, prepared):
            if not bumped["done"]:
                bumped["done"] = True
                # Load the snapshot into this session, then let a second writer win
                await EntitlementStore(session).get_by_subscription(SUB)
                async with session_factory() as other, other.begin():
                    await EntitlementStore(other).adjust_usage(organization.id, "listings", 1)
            return await original(session, prepared)

        monkeypatch.setattr(reconciler, "_transition", bump_then_apply)

        result = await process(reconciler, updated_event(5, status="past_due"))

        assert result.outcome == ReconcileOutcome.APPLIED
        view = await snapshot_view(session_factory, organization.id)
        assert view.status == EntitlementStatus.PAST_DUE
        assert view.usage.current_listings == 1
