"""Stripe webhook endpoints: receive and process Stripe events.

``router`` is always mounted. ``dev_router`` skips signature verification
and is only mounted when the development webhook endpoint is enabled
outside production.
"""

import logging
import time
import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from app.api.deps import get_context
from app.billing.context import BillingContext
from app.billing.engine import WebhookOutcome
from app.billing.errors import BillingValidationError, WebhookVerificationError
from app.models.subscription import Plan
from app.schemas.billing import SimulateCheckoutRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])
dev_router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks (dev)"])


def _outcome_body(outcome: WebhookOutcome) -> dict[str, Any]:
    return {
        "received": True,
        "status": outcome.status.value,
        "event_id": outcome.event_id,
        "reason": outcome.reason,
    }


@router.post("/stripe")
async def stripe_webhook(
    request: Request, context: BillingContext = Depends(get_context)
) -> dict[str, Any]:
    """Receive a Stripe event. Always 200 once the signature checks out."""
    # Raw body: the signature is computed over the exact bytes Stripe sent
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        outcome = await context.ingress.receive(payload, sig_header)
    except WebhookVerificationError as e:
        logger.warning("Webhook signature verification failed: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    return _outcome_body(outcome)


@dev_router.post("/stripe/test")
async def stripe_webhook_test(
    event: dict[str, Any] = Body(...),
    context: BillingContext = Depends(get_context),
) -> dict[str, Any]:
    """Process an unsigned event body (development only)."""
    logger.info("Test webhook: %s", event.get("type"))
    outcome = await context.ingress.process_unverified(event)
    return _outcome_body(outcome)


@dev_router.post("/simulate/checkout")
async def simulate_checkout(
    body: SimulateCheckoutRequest,
    context: BillingContext = Depends(get_context),
) -> dict[str, Any]:
    """Fake a completed checkout for ``user_id`` (development only)."""
    if body.plan not in context.catalog.purchasable_names and body.plan != Plan.PREMIUM.value:
        raise BillingValidationError(f"Unknown plan '{body.plan}'.")
    event = {
        "id": f"evt_sim_{uuid.uuid4().hex}",
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "livemode": False,
        "data": {
            "object": {
                "id": "cs_test_simulated",
                "client_reference_id": body.user_id,
                "metadata": {"userId": body.user_id, "plan": body.plan},
                "amount_total": context.catalog.get(body.plan).price_cents,
                "currency": context.catalog.currency,
                "customer_email": body.email,
            }
        },
    }
    outcome = await context.ingress.process_unverified(event)
    return _outcome_body(outcome)
