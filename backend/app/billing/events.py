"""Stripe payload models and the ``WebhookEvent`` tagged union.

Raw webhook JSON is validated here, at the ingress boundary, so the engine
only ever sees typed events. Subscription objects returned by the Stripe API
are parsed with the same models (``StripeObject`` is a ``dict`` subclass).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class _StripePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- Stripe objects ---


class StripePrice(_StripePayload):
    id: str


class StripeSubscriptionItem(_StripePayload):
    id: str | None = None
    price: StripePrice | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None


class StripeItemList(_StripePayload):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscriptionPayload(_StripePayload):
    id: str
    customer: str | None = None
    status: str
    cancel_at_period_end: bool = False
    # Top-level periods exist on API versions before 2025-08-27 (basil)
    current_period_start: int | None = None
    current_period_end: int | None = None
    ended_at: int | None = None
    items: StripeItemList | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    def to_snapshot(self) -> "ProviderSubscription":
        item = self.items.data[0] if self.items and self.items.data else None
        # In basil, current_period_start/end moved to the subscription item
        period_start = item.current_period_start if item and item.current_period_start else self.current_period_start
        period_end = item.current_period_end if item and item.current_period_end else self.current_period_end
        return ProviderSubscription(
            id=self.id,
            customer_id=self.customer,
            status=self.status,
            price_id=item.price.id if item and item.price else None,
            item_id=item.id if item else None,
            cancel_at_period_end=self.cancel_at_period_end,
            current_period_start=ts_to_naive(period_start),
            current_period_end=ts_to_naive(period_end),
            ended_at=ts_to_naive(self.ended_at),
            metadata=dict(self.metadata),
        )


class StripeCustomerDetails(_StripePayload):
    email: str | None = None


class StripeCheckoutSessionPayload(_StripePayload):
    id: str
    customer: str | None = None
    subscription: str | None = None
    client_reference_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    amount_total: int | None = None
    currency: str | None = None
    payment_intent: str | None = None
    customer_email: str | None = None
    customer_details: StripeCustomerDetails | None = None

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or self.client_reference_id

    @property
    def email(self) -> str | None:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class StripeErrorDetail(_StripePayload):
    message: str | None = None


class StripeStatusTransitions(_StripePayload):
    paid_at: int | None = None


class StripeInvoicePayload(_StripePayload):
    id: str
    customer: str | None = None
    subscription: str | None = None
    payment_intent: str | None = None
    billing_reason: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    customer_email: str | None = None
    next_payment_attempt: int | None = None
    last_finalization_error: StripeErrorDetail | None = None
    status_transitions: StripeStatusTransitions | None = None

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason == "subscription_cycle"

    @property
    def failure_reason(self) -> str:
        if self.last_finalization_error and self.last_finalization_error.message:
            return self.last_finalization_error.message
        return "Unknown payment failure"


# --- Events ---


class _EventBase(_StripePayload):
    id: str
    created: int
    livemode: bool = False

    @property
    def created_at(self) -> datetime:
        return ts_to_naive(self.created)  # type: ignore[return-value]


class _CheckoutSessionData(_StripePayload):
    obj: StripeCheckoutSessionPayload = Field(alias="object")


class _SubscriptionData(_StripePayload):
    obj: StripeSubscriptionPayload = Field(alias="object")


class _InvoiceData(_StripePayload):
    obj: StripeInvoicePayload = Field(alias="object")


class CheckoutCompletedEvent(_EventBase):
    type: Literal["checkout.session.completed"]
    data: _CheckoutSessionData

    @property
    def session(self) -> StripeCheckoutSessionPayload:
        return self.data.obj


class SubscriptionUpdatedEvent(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: _SubscriptionData

    @property
    def subscription(self) -> "ProviderSubscription":
        return self.data.obj.to_snapshot()


class SubscriptionDeletedEvent(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData

    @property
    def subscription(self) -> "ProviderSubscription":
        return self.data.obj.to_snapshot()


class InvoicePaidEvent(_EventBase):
    type: Literal["invoice.paid"]
    data: _InvoiceData

    @property
    def invoice(self) -> StripeInvoicePayload:
        return self.data.obj


class InvoicePaymentFailedEvent(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: _InvoiceData

    @property
    def invoice(self) -> StripeInvoicePayload:
        return self.data.obj


WebhookEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        InvoicePaidEvent,
        InvoicePaymentFailedEvent,
    ],
    Field(discriminator="type"),
]

RECOGNIZED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.paid",
        "invoice.payment_failed",
    }
)

_event_adapter: TypeAdapter = TypeAdapter(WebhookEvent)


@dataclass(frozen=True)
class UnrecognizedEvent:
    """Any event type the engine does not handle. Acknowledged and ignored."""

    id: str
    type: str


def parse_event(raw: dict[str, Any]) -> Union[WebhookEvent, UnrecognizedEvent]:
    """Validate a decoded event body.

    Raises:
        pydantic.ValidationError: If a recognised event is missing required fields.
    """
    event_type = str(raw.get("type", ""))
    if event_type not in RECOGNIZED_EVENT_TYPES:
        return UnrecognizedEvent(id=str(raw.get("id", "")), type=event_type)
    return _event_adapter.validate_python(raw)


@dataclass(frozen=True)
class ProviderSubscription:
    """Snapshot of a Stripe subscription as the engine needs it."""

    id: str
    customer_id: str | None
    status: str
    price_id: str | None
    item_id: str | None
    cancel_at_period_end: bool
    current_period_start: datetime | None
    current_period_end: datetime | None
    ended_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
