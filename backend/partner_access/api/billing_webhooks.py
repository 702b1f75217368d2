"""
Billing webhook ingress.

WHAT: Receives Stripe webhooks, verifies their signature and hands them to
the billing event reconciler.

WHY: This is the only way billing-provider state enters the system.

ENDPOINTS:
POST /webhooks/stripe/billing

RESPONSES:
- 200 {received, outcome}: applied, duplicate, stale, notified, ignored;
  also "not_found" (target missing, counted and escalated) and "held"
  (malformed payload, kept for replay). Neither is worth a provider retry.
- 400: missing or invalid signature, unreadable event
- 409: lost a concurrency race repeatedly; the provider redelivers
- 500: webhook secret not configured

SECURITY:
- Signature verified with the endpoint secret before anything is parsed
"""

import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_access.core.config import settings
from partner_access.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from partner_access.db.session import get_session_factory
from partner_access.schemas.billing import BillingEvent
from partner_access.services.billing_reconciler import BillingEventReconciler
from partner_access.services.notification_service import get_notification_dispatcher
from partner_access.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the provider."""

    received: bool = True
    outcome: str
    event_id: Optional[str] = None


_reconciler: Optional[BillingEventReconciler] = None


def get_billing_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> BillingEventReconciler:
    """
    Get the process-wide reconciler.

    WHY: The reconciler owns the per-subscription locks and the plan
    catalog cache, so all requests in a process must share one.
    """
    global _reconciler

    if _reconciler is None or _reconciler.session_factory is not session_factory:
        _reconciler = BillingEventReconciler(
            session_factory,
            PlanCatalog(session_factory),
            get_notification_dispatcher(),
        )

    return _reconciler


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/stripe/billing",
    response_model=WebhookResponse,
    summary="Stripe billing webhook",
    description="Applies Stripe subscription and invoice events to entitlements.",
)
async def stripe_billing_webhook(
    request: Request,
    reconciler: BillingEventReconciler = Depends(get_billing_reconciler),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """
    Handle Stripe billing webhooks.

    Returns:
        Acknowledgement with the reconcile outcome
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook secret not configured")
        raise ConfigurationError("Webhook secret not configured")

    if not stripe_signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise WebhookSignatureError("Missing Stripe-Signature header")

    # Raw body: the signature covers the exact bytes
    payload = await request.body()

    try:
        stripe.Webhook.construct_event(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise WebhookSignatureError() from e
    except ValueError as e:
        logger.warning(f"Webhook payload is not valid JSON: {e}")
        raise ValidationError("Webhook payload is not valid JSON") from e

    event = BillingEvent.from_provider_event(json.loads(payload))

    try:
        result = await reconciler.process(event)
    except ValidationError:
        return WebhookResponse(outcome="held", event_id=event.external_event_id)
    except NotFoundError:
        return WebhookResponse(outcome="not_found", event_id=event.external_event_id)

    return WebhookResponse(outcome=result.outcome.value, event_id=result.event_id)
