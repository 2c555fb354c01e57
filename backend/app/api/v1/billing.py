"""Billing API endpoints: plans, subscription view and subscription commands.

Commands raise ``BillingError`` subclasses; the handler registered in
``app.main`` turns them into HTTP errors carrying the domain message.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_context, get_current_user_id
from app.billing.context import BillingContext
from app.billing.plans import ProrationEstimate, format_amount
from app.models.subscription import Subscription
from app.schemas.billing import (
    ChangePlanRequest,
    ChangePlanResponse,
    CheckoutRequest,
    CheckoutResponse,
    PlanResponse,
    PlansListResponse,
    ProrationResponse,
    RefundEligibilityResponse,
    RefundRequest,
    RefundResponse,
    SubscriptionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(subscription)


def _proration_response(estimate: ProrationEstimate) -> ProrationResponse:
    return ProrationResponse(
        credit=estimate.credit,
        charge=estimate.charge,
        amount_due=estimate.amount_due,
        currency=estimate.currency,
        amount_due_display=format_amount(estimate.amount_due, estimate.currency),
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(context: BillingContext = Depends(get_context)) -> PlansListResponse:
    """List available plans (public, no auth required)."""
    catalog = context.catalog
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                interval_months=p.interval_months,
                price_cents=p.price_cents,
                price_display=format_amount(p.price_cents, catalog.currency),
                currency=catalog.currency,
                purchasable=p.purchasable,
            )
            for p in catalog.plans.values()
        ]
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> SubscriptionResponse:
    """Get the current subscription (expired on read if its period is over)."""
    subscription = await context.engine.get_subscription(user_id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No subscription found.",
        )
    return _subscription_response(subscription)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a new subscription."""
    result = await context.engine.create_checkout(user_id, body.plan, body.email)
    return CheckoutResponse(checkout_url=result.url, session_id=result.session_id, plan=result.plan)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> SubscriptionResponse:
    """Cancel at the end of the current billing period."""
    subscription = await context.engine.cancel_at_period_end(user_id)
    return _subscription_response(subscription)


@router.post("/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> SubscriptionResponse:
    """Undo a scheduled cancellation."""
    subscription = await context.engine.reactivate(user_id)
    return _subscription_response(subscription)


@router.post("/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    body: ChangePlanRequest,
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> ChangePlanResponse:
    """Switch plan with proration. The estimate is for display only."""
    result = await context.engine.change_plan(user_id, body.plan)
    return ChangePlanResponse(
        subscription=_subscription_response(result.subscription),
        proration=_proration_response(result.proration),
    )


@router.post("/refund", response_model=RefundResponse)
async def request_refund(
    body: RefundRequest,
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> RefundResponse:
    """Refund the last payment and end the subscription immediately."""
    result = await context.engine.request_refund(user_id, body.reason)
    return RefundResponse(
        subscription=_subscription_response(result.subscription),
        refund_status=result.status.value,
        amount=result.amount,
        amount_display=format_amount(result.amount, result.currency),
        refund_id=result.refund_id,
    )


@router.get("/refund/eligibility", response_model=RefundEligibilityResponse)
async def refund_eligibility(
    context: BillingContext = Depends(get_context),
    user_id: str = Depends(get_current_user_id),
) -> RefundEligibilityResponse:
    eligibility = await context.engine.refund_eligibility(user_id)
    return RefundEligibilityResponse(
        eligible=eligibility.eligible,
        reason=eligibility.reason,
        deadline=eligibility.deadline,
    )
