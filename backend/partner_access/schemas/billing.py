"""
Billing event schemas.

WHAT: The provider-neutral event envelope consumed by the reconciler,
the payload models for subscription and invoice objects, and the
reconcile result.

WHY: Stripe payloads are loosely shaped and have moved fields between
API versions (period dates moved onto subscription items, the invoice's
subscription moved under `parent`). Validating them once here means the
reconciler works with typed values and a malformed payload surfaces as a
single ValidationError that holds the event for replay.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from partner_access.core.exceptions import ValidationError
from partner_access.models.entitlement import EntitlementStatus


# ============================================================================
# Event types
# ============================================================================


class BillingEventType(str, Enum):
    """Event types the reconciler knows how to apply."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"
    INVOICE_FINALIZED = "invoice.finalized"


NOTIFICATION_ONLY_TYPES = frozenset(
    {
        BillingEventType.SUBSCRIPTION_TRIAL_WILL_END,
        BillingEventType.INVOICE_UPCOMING,
        BillingEventType.INVOICE_FINALIZED,
    }
)

INVOICE_PAYMENT_TYPES = frozenset(
    {
        BillingEventType.INVOICE_PAYMENT_SUCCEEDED,
        BillingEventType.INVOICE_PAYMENT_FAILED,
    }
)

STRIPE_SUBSCRIPTION_PREFIX = "customer.subscription."


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts epoch seconds (Stripe's format), datetimes and ISO strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    raise ValueError(f"unsupported timestamp: {value!r}")


PayloadModel = TypeVar("PayloadModel", bound=BaseModel)


def parse_payload(model: Type[PayloadModel], data: Any, **context: Any) -> PayloadModel:
    """Validate `data` into `model`, raising our ValidationError on failure."""
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Malformed {model.__name__}: {e.error_count()} error(s)",
            errors=[
                {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
            **context,
        ) from e


# ============================================================================
# Envelope
# ============================================================================


class BillingEvent(BaseModel):
    """
    Provider-neutral billing event.

    `object_ref` is the provider subscription id for both subscription and
    invoice events, so every event for one subscription targets one
    snapshot.
    """

    model_config = ConfigDict(frozen=True)

    external_event_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    object_ref: Optional[str] = None
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @property
    def known_type(self) -> Optional[BillingEventType]:
        try:
            return BillingEventType(self.type)
        except ValueError:
            return None

    def to_envelope(self) -> Dict[str, Any]:
        """JSON-safe form, stored with held events for replay."""
        return self.model_dump(mode="json")

    @classmethod
    def from_envelope(cls, envelope: Mapping[str, Any]) -> "BillingEvent":
        return parse_payload(cls, envelope)

    @classmethod
    def from_provider_event(cls, event: Mapping[str, Any]) -> "BillingEvent":
        """
        Translate a Stripe event into a BillingEvent.

        `customer.subscription.*` becomes `subscription.*`; invoice events
        keep their names and point at the invoice's subscription.

        Raises:
            ValidationError: If the event lacks id, type, created or data.object
        """
        try:
            event_id = event["id"]
            provider_type = event["type"]
            created = event["created"]
            obj = event["data"]["object"]
        except (KeyError, TypeError) as e:
            raise ValidationError(
                "Provider event is missing required fields",
                event_id=event.get("id") if isinstance(event, Mapping) else None,
            ) from e

        if not isinstance(obj, Mapping) or not isinstance(provider_type, str):
            raise ValidationError("Provider event object is malformed", event_id=event_id)

        if provider_type.startswith(STRIPE_SUBSCRIPTION_PREFIX):
            event_type = "subscription." + provider_type[len(STRIPE_SUBSCRIPTION_PREFIX):]
            object_ref = obj.get("id")
        elif provider_type.startswith("invoice."):
            event_type = provider_type
            try:
                object_ref = invoice_subscription_id(obj)
            except ValueError as e:
                raise ValidationError(f"Malformed invoice: {e}", event_id=event_id) from e
        else:
            event_type = provider_type
            object_ref = obj.get("id")

        return parse_payload(
            cls,
            {
                "external_event_id": event_id,
                "type": event_type,
                "object_ref": object_ref,
                "timestamp": created,
                "payload": dict(obj),
            },
            event_id=event_id,
        )


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    """
    Subscription id of an invoice, on old and new API shapes.

    Raises:
        ValueError: If a nested object is not a mapping or the id is not a string
    """
    subscription = invoice.get("subscription")
    if subscription is None:
        parent = _mapping(invoice.get("parent"), "parent")
        details = _mapping(parent.get("subscription_details"), "parent.subscription_details")
        subscription = details.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    if subscription is not None and not isinstance(subscription, str):
        raise ValueError(f"subscription must be an id, got {type(subscription).__name__}")
    return subscription


def _mapping(value: Any, name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{name} must be an object, got {type(value).__name__}")
    return value


# ============================================================================
# Payloads
# ============================================================================


class SubscriptionMetadata(BaseModel):
    """Metadata we attach to subscriptions at checkout."""

    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    organization_id: Optional[int] = None
    plan: Optional[str] = None
    organization_name: Optional[str] = None


class SubscriptionPayload(BaseModel):
    """A Stripe subscription object, flattened to what we apply."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: EntitlementStatus
    price_id: Optional[str] = None
    metadata: SubscriptionMetadata = Field(default_factory=SubscriptionMetadata)
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        items = _mapping(data.get("items"), "items").get("data") or []
        if not isinstance(items, list):
            raise ValueError(f"items.data must be a list, got {type(items).__name__}")
        first_item = _mapping(items[0], "items.data[0]") if items else {}

        if data.get("price_id") is None:
            price = first_item.get("price") or {}
            data["price_id"] = price.get("id") if isinstance(price, Mapping) else price

        # Period dates: top level, then the nested period object, then the first item
        nested = _mapping(data.get("current_period"), "current_period")
        for field, nested_key in (
            ("current_period_start", "start"),
            ("current_period_end", "end"),
        ):
            if data.get(field) is None:
                data[field] = nested.get(nested_key) or first_item.get(field)

        if data.get("metadata") is None:
            data["metadata"] = {}
        if data.get("cancel_at_period_end") is None:
            data["cancel_at_period_end"] = False
        return data

    @field_validator(
        "current_period_start", "current_period_end", "trial_start", "trial_end", mode="before"
    )
    @classmethod
    def _parse_dates(cls, value: Any) -> Any:
        return parse_timestamp(value)


class InvoicePayload(BaseModel):
    """A Stripe invoice object, flattened to what we record."""

    model_config = ConfigDict(extra="ignore")

    # Upcoming-invoice previews have no id yet
    id: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    attempt_count: int = 1

    @model_validator(mode="before")
    @classmethod
    def _resolve_subscription(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        data["subscription"] = invoice_subscription_id(data)
        return data


# ============================================================================
# Result
# ============================================================================


class ReconcileOutcome(str, Enum):
    """What processing an event did."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    NOTIFIED = "notified"
    IGNORED = "ignored"


class ReconcileResult(BaseModel):
    """Result of processing one billing event."""

    model_config = ConfigDict(frozen=True)

    outcome: ReconcileOutcome
    event_id: str
    organization_id: Optional[int] = None
    status: Optional[EntitlementStatus] = None
