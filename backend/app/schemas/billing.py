"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to create a Stripe Checkout session."""

    plan: str  # "monthly" or "annual"
    email: str | None = None


class ChangePlanRequest(BaseModel):
    """Request to switch an active subscription to another plan."""

    plan: str


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    name: str
    display_name: str
    interval_months: int
    price_cents: int
    price_display: str
    currency: str
    purchasable: bool


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """Subscription record of the authenticated user."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    plan: str
    status: str
    is_active: bool
    cancelation_type: str | None
    start_date: datetime | None
    end_date: datetime | None
    payment_method: str
    payment_status: str | None
    last_payment_date: datetime | None
    refund_status: str
    refund_amount: int | None  # minor units
    refund_date: datetime | None


class CheckoutResponse(BaseModel):
    """Stripe Checkout session URL returned to frontend."""

    checkout_url: str | None
    session_id: str
    plan: str


class ProrationResponse(BaseModel):
    """Approximate plan-change cost. Stripe's invoice is authoritative."""

    credit: int
    charge: int
    amount_due: int
    currency: str
    amount_due_display: str


class ChangePlanResponse(BaseModel):
    subscription: SubscriptionResponse
    proration: ProrationResponse


class RefundResponse(BaseModel):
    subscription: SubscriptionResponse
    refund_status: str
    amount: int
    amount_display: str
    refund_id: str | None


class RefundEligibilityResponse(BaseModel):
    eligible: bool
    reason: str | None
    deadline: datetime | None


class SimulateCheckoutRequest(BaseModel):
    """Development-only: fake a completed checkout for a user."""

    user_id: str
    plan: str = "monthly"
    email: str | None = None
