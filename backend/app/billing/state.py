"""Subscription state machine: pure transition functions.

Each function takes the current record (or provider data) and returns the
field changes to upsert. Nothing here touches the database, Stripe or the
entitlement notifier; ``ReconciliationEngine`` does the orchestration.

States: active, trialing, canceled(end_of_period), canceled(immediate),
suspended, incomplete. ``canceled(immediate)`` with ``is_active=False`` is
terminal until a fresh checkout.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.billing.errors import InvalidTransitionError, RefundNotAllowedError
from app.billing.events import (
    ProviderSubscription,
    StripeCheckoutSessionPayload,
    StripeInvoicePayload,
    ts_to_naive,
)
from app.billing.plans import PlanCatalog
from app.models.subscription import (
    CancelationType,
    PaymentMethod,
    PaymentStatus,
    Plan,
    RefundStatus,
    Subscription,
    SubscriptionStatus,
)

Changes = dict[str, Any]

# Stripe subscription status -> local status
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.SUSPENDED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE,
}

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


def map_provider_status(status: str) -> SubscriptionStatus:
    return PROVIDER_STATUS_MAP.get(status, SubscriptionStatus.INCOMPLETE)


def is_scheduled_cancellation(record: Subscription) -> bool:
    return (
        record.status == SubscriptionStatus.CANCELED.value
        and record.cancelation_type == CancelationType.END_OF_PERIOD.value
        and record.is_active
    )


def is_lapsed(record: Subscription, now: datetime) -> bool:
    """Entitled on paper but past ``end_date`` with nothing left to renew it."""
    if not record.is_active or record.end_date is None or record.end_date > now:
        return False
    auto_renewing = (
        record.status in ENTITLED_STATUSES
        and record.payment_method == PaymentMethod.PROVIDER.value
    )
    return not auto_renewing


# --- Commands ---


def ensure_can_checkout(record: Subscription | None, plan: str, catalog: PlanCatalog) -> None:
    if plan not in catalog.purchasable_names:
        raise InvalidTransitionError(
            f"Plan '{plan}' cannot be purchased. Choose one of: {', '.join(catalog.purchasable_names)}."
        )
    if record is not None and record.is_active and record.status in ENTITLED_STATUSES:
        raise InvalidTransitionError(
            f"You already have an active {record.plan} subscription. Use change plan instead."
        )


def checkout_preregistration(session_id: str, email: str | None) -> tuple[Changes, Changes]:
    """Changes and insert-only defaults for the optimistic pre-registration."""
    changes: Changes = {
        "checkout_session_id": session_id,
        "payment_method": PaymentMethod.PROVIDER,
    }
    if email:
        changes["customer_email"] = email
    defaults: Changes = {
        "plan": Plan.FREE,
        "status": SubscriptionStatus.INCOMPLETE,
        "is_active": False,
    }
    return changes, defaults


def ensure_can_schedule_cancellation(record: Subscription) -> bool:
    """Validate ``cancel_at_period_end``.

    Returns:
        True when the cancellation is already scheduled (idempotent no-op).
    """
    if is_scheduled_cancellation(record):
        return True
    if record.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransitionError(
            f"Only an active subscription can be canceled (current status: {record.status})."
        )
    return False


def scheduled_cancellation(period_end: datetime | None, now: datetime) -> Changes:
    changes: Changes = {
        "status": SubscriptionStatus.CANCELED,
        "cancelation_type": CancelationType.END_OF_PERIOD,
        "is_active": True,
        "status_changed_at": now,
    }
    if period_end is not None:
        changes["end_date"] = period_end
    return changes


def ensure_can_reactivate(record: Subscription, now: datetime) -> None:
    if record.status != SubscriptionStatus.CANCELED.value:
        raise InvalidTransitionError(
            f"Only a canceled subscription can be reactivated (current status: {record.status})."
        )
    if record.cancelation_type != CancelationType.END_OF_PERIOD.value:
        raise InvalidTransitionError(
            "This subscription was canceled immediately and cannot be reactivated. "
            "Start a new checkout instead."
        )
    if not record.is_active or record.end_date is None or now >= record.end_date:
        raise InvalidTransitionError(
            "This subscription has already ended and cannot be reactivated."
        )


def reactivation(now: datetime) -> Changes:
    return {
        "status": SubscriptionStatus.ACTIVE,
        "cancelation_type": CancelationType.NONE,
        "is_active": True,
        "status_changed_at": now,
    }


def ensure_can_change_plan(record: Subscription, new_plan: str, catalog: PlanCatalog) -> None:
    if new_plan not in catalog.purchasable_names:
        raise InvalidTransitionError(
            f"Plan '{new_plan}' is not available. Choose one of: {', '.join(catalog.purchasable_names)}."
        )
    if record.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransitionError(
            f"Only an active subscription can change plan (current status: {record.status})."
        )
    if record.plan == new_plan:
        raise InvalidTransitionError(f"You are already on the {new_plan} plan.")
    if not record.provider_subscription_id:
        raise InvalidTransitionError(
            "This subscription is not billed through Stripe and cannot change plan online."
        )


def plan_change(new_plan: str, price_id: str | None, period_end: datetime | None) -> Changes:
    changes: Changes = {"plan": new_plan, "provider_price_id": price_id}
    if period_end is not None:
        changes["end_date"] = period_end
    return changes


def immediate_cancellation(now: datetime) -> Changes:
    return {
        "status": SubscriptionStatus.CANCELED,
        "cancelation_type": CancelationType.IMMEDIATE,
        "is_active": False,
        "end_date": now,
        "status_changed_at": now,
    }


def lapse(record: Subscription, now: datetime) -> Changes:
    """Expire a record whose paid period is over."""
    changes: Changes = {"is_active": False, "status_changed_at": now}
    if record.status != SubscriptionStatus.CANCELED.value:
        changes["status"] = SubscriptionStatus.CANCELED
        changes["cancelation_type"] = CancelationType.END_OF_PERIOD
    return changes


# --- Refunds ---


@dataclass(frozen=True)
class RefundEligibility:
    eligible: bool
    reason: str | None = None
    deadline: datetime | None = None


def refund_eligibility(
    record: Subscription | None, now: datetime, window_days: int
) -> RefundEligibility:
    if record is None or not record.last_transaction_id or record.last_payment_date is None:
        return RefundEligibility(False, "No payment found to refund.")
    if record.refund_status != RefundStatus.NONE.value:
        return RefundEligibility(False, "This payment has already been refunded.")
    deadline = record.last_payment_date + timedelta(days=window_days)
    if now > deadline:
        return RefundEligibility(
            False,
            f"Refunds are only possible within {window_days} days of payment.",
            deadline,
        )
    return RefundEligibility(True, None, deadline)


def ensure_refund_eligible(eligibility: RefundEligibility) -> None:
    if not eligibility.eligible:
        raise RefundNotAllowedError(eligibility.reason or "Refund not allowed.")


def refund_recorded(
    status: RefundStatus, amount: int, reason: str, now: datetime
) -> Changes:
    return {
        "refund_status": status,
        "refund_amount": amount,
        "refund_date": now,
        "refund_reason": reason,
    }


# --- Provider events ---


def checkout_completion(
    session: StripeCheckoutSessionPayload,
    provider_sub: ProviderSubscription | None,
    catalog: PlanCatalog,
    now: datetime,
) -> Changes:
    """A paid checkout: (re)create an entitled record."""
    metadata_plan = session.metadata.get("plan")
    if provider_sub is not None and provider_sub.price_id:
        plan = catalog.plan_for_price(provider_sub.price_id)
    elif metadata_plan in {p.value for p in Plan} and metadata_plan != Plan.FREE.value:
        plan = metadata_plan
    else:
        plan = Plan.PREMIUM.value

    status = SubscriptionStatus.ACTIVE
    if provider_sub is not None and provider_sub.status == "trialing":
        status = SubscriptionStatus.TRIALING

    end_date = provider_sub.current_period_end if provider_sub else None
    if end_date is None:
        end_date = catalog.period_end_after(plan, now, now)

    changes: Changes = {
        "plan": plan,
        "status": status,
        "is_active": True,
        "cancelation_type": CancelationType.NONE,
        "start_date": now,
        "end_date": end_date,
        "status_changed_at": now,
        "payment_method": PaymentMethod.PROVIDER,
        "checkout_session_id": session.id,
        "last_payment_date": now,
        "last_transaction_id": session.payment_intent or session.id,
        "payment_status": PaymentStatus.SUCCESS,
        "refund_status": RefundStatus.NONE,
        "refund_amount": None,
        "refund_date": None,
        "refund_reason": None,
    }
    if session.customer:
        changes["provider_customer_id"] = session.customer
    if provider_sub is not None:
        changes["provider_subscription_id"] = provider_sub.id
        changes["provider_price_id"] = provider_sub.price_id
    elif session.subscription:
        changes["provider_subscription_id"] = session.subscription
    if session.email:
        changes["customer_email"] = session.email
    return changes


def provider_mirror(
    sub: ProviderSubscription, catalog: PlanCatalog, event_time: datetime
) -> Changes:
    """Mirror a ``customer.subscription.updated`` snapshot onto the record."""
    local_status = map_provider_status(sub.status)
    changes: Changes = {
        "plan": catalog.plan_for_price(sub.price_id),
        "provider_subscription_id": sub.id,
        "provider_price_id": sub.price_id,
        "status_changed_at": event_time,
    }
    if sub.current_period_end is not None:
        changes["end_date"] = sub.current_period_end

    if sub.cancel_at_period_end and local_status.value in ENTITLED_STATUSES:
        # Scheduled for cancellation: entitlement kept until end_date
        changes.update(
            status=SubscriptionStatus.CANCELED,
            cancelation_type=CancelationType.END_OF_PERIOD,
            is_active=True,
        )
    elif local_status.value in ENTITLED_STATUSES:
        changes.update(
            status=local_status,
            cancelation_type=CancelationType.NONE,
            is_active=True,
        )
    elif local_status == SubscriptionStatus.CANCELED:
        changes.update(
            status=SubscriptionStatus.CANCELED,
            cancelation_type=CancelationType.IMMEDIATE,
            is_active=False,
            end_date=sub.ended_at or event_time,
        )
    else:
        changes.update(status=local_status, is_active=False)
    return changes


def provider_deletion(sub: ProviderSubscription, event_time: datetime) -> Changes:
    return {
        "status": SubscriptionStatus.CANCELED,
        "cancelation_type": CancelationType.IMMEDIATE,
        "is_active": False,
        "end_date": sub.ended_at or event_time,
        "status_changed_at": event_time,
        "provider_subscription_id": sub.id,
    }


def invoice_payment(invoice: StripeInvoicePayload, event_time: datetime) -> Changes:
    paid_at = event_time
    if invoice.status_transitions and invoice.status_transitions.paid_at:
        paid_at = ts_to_naive(invoice.status_transitions.paid_at)
    return {
        "last_payment_date": paid_at,
        "last_transaction_id": invoice.payment_intent or invoice.id,
        "payment_status": PaymentStatus.SUCCESS,
    }


def invoice_failure(invoice: StripeInvoicePayload, event_time: datetime) -> Changes:
    return {
        "payment_status": PaymentStatus.FAILED,
        "last_failure_reason": invoice.failure_reason,
        "last_failure_date": event_time,
    }
