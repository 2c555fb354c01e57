"""Reconciliation engine: commands and provider events for subscriptions.

Commands (checkout, cancel, reactivate, change plan, refund) validate the
current record, call Stripe first and write locally only once Stripe has
confirmed. Webhook handlers mirror provider state through a compare-and-swap
upsert so an older event never overwrites a newer transition.

Entitlement is a single post-transition step: whenever a write sets
``is_active``, the user's role is derived from that value alone.
"""

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.billing import state
from app.billing.entitlements import EntitlementNotifier, desired_role
from app.billing.errors import (
    BillingError,
    BillingValidationError,
    ConcurrentModificationError,
    CorrelationError,
    InvalidTransitionError,
    ProviderError,
    ProviderResourceGoneError,
    SubscriptionNotFoundError,
)
from app.billing.events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    ProviderSubscription,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
    WebhookEvent,
    ts_to_naive,
)
from app.billing.outbox import (
    ENTITLEMENT_SYNC,
    NOTIFICATION,
    PROVIDER_CANCEL,
    USAGE_EVENT,
    OutboxService,
)
from app.billing.plans import PlanCatalog, ProrationEstimate, format_amount
from app.billing.stripe_client import ProviderGateway
from app.database import utcnow
from app.models.subscription import (
    PaymentMethod,
    Plan,
    RefundStatus,
    Subscription,
    SubscriptionStatus,
)
from app.models.user import Role
from app.services.subscription_service import SubscriptionStore

logger = logging.getLogger(__name__)


class OutcomeStatus(str, enum.Enum):
    PROCESSED = "processed"
    NOOP = "noop"
    STALE = "stale"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of handling one provider event. Handlers return, never raise."""

    status: OutcomeStatus
    event_id: str
    event_type: str
    reason: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str | None
    plan: str


@dataclass(frozen=True)
class PlanChangeResult:
    subscription: Subscription
    proration: ProrationEstimate


@dataclass(frozen=True)
class RefundResult:
    subscription: Subscription
    status: RefundStatus
    amount: int
    currency: str
    refund_id: str | None


def _require_known_plan(plan: str) -> None:
    if plan not in {p.value for p in Plan}:
        raise BillingValidationError(f"Unknown plan '{plan}'.")


class ReconciliationEngine:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: ProviderGateway,
        catalog: PlanCatalog,
        notifier: EntitlementNotifier,
        outbox: OutboxService,
        *,
        success_url: str,
        cancel_url: str,
        refund_window_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = notifier
        self.outbox = outbox
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.refund_window_days = refund_window_days
        self._clock = clock

    # --- Persistence and entitlement ---

    async def _require(self, user_id: str) -> Subscription:
        record = await self.store.get_by_user_id(user_id)
        if record is None:
            raise SubscriptionNotFoundError(user_id)
        return record

    async def _apply(self, user_id: str, changes: state.Changes, **guards) -> Subscription | None:
        """Upsert, then run the entitlement step if the write decided ``is_active``."""
        record = await self.store.upsert_by_user_id(user_id, changes, **guards)
        if record is not None and "is_active" in changes:
            await self._sync_role(user_id, bool(changes["is_active"]))
        return record

    async def _sync_role(self, user_id: str, is_active: bool) -> None:
        role = desired_role(is_active)
        try:
            await self.notifier.set_role(user_id, role)
        except Exception as e:
            logger.warning("Role update to %s failed for user %s, queueing sync: %s", role.value, user_id, e)
            try:
                await self.outbox.enqueue(ENTITLEMENT_SYNC, {"user_id": user_id}, failure_reason=str(e))
            except Exception:
                logger.exception("Could not queue entitlement sync for user %s", user_id)

    async def sync_entitlement(self, user_id: str) -> Role:
        """Recompute the role from the stored record and push it to the notifier."""
        record = await self.store.get_by_user_id(user_id)
        now = self._clock()
        entitled = bool(record and record.is_active and not state.is_lapsed(record, now))
        role = desired_role(entitled)
        await self.notifier.set_role(user_id, role)
        logger.info("Entitlement sync for user %s: %s", user_id, role.value)
        return role

    # --- Side effects (best effort, via outbox) ---

    async def _usage(self, event: str, user_id: str, **data: Any) -> None:
        payload = {"event": event, "userId": user_id, "timestamp": self._clock().isoformat(), **data}
        await self.outbox.dispatch(USAGE_EVENT, payload)

    async def _notify(self, kind: str, email: str | None, data: dict[str, Any]) -> None:
        if not email:
            logger.debug("No email on record, skipping %s notification", kind)
            return
        await self.outbox.dispatch(NOTIFICATION, {"type": kind, "email": email, "data": data})

    def _amount(self, amount_minor: int | None, currency: str | None = None) -> str:
        return format_amount(amount_minor or 0, currency or self.catalog.currency)

    # --- Queries ---

    async def get_subscription(self, user_id: str) -> Subscription | None:
        """Current record, expiring it on read if its paid period is over."""
        record = await self.store.get_by_user_id(user_id)
        now = self._clock()
        if record is not None and state.is_lapsed(record, now):
            record = await self._expire(record, now)
        return record

    async def _expire(self, record: Subscription, now: datetime) -> Subscription:
        updated = await self._apply(
            record.user_id, state.lapse(record, now), expected_statuses=[record.status]
        )
        if updated is None:
            return await self._require(record.user_id)
        logger.info("Subscription for user %s lapsed at %s", record.user_id, record.end_date)
        await self._notify(
            "subscription_ended",
            record.customer_email,
            {"plan": record.plan, "endDate": record.end_date.isoformat()},
        )
        return updated

    async def expire_lapsed(self) -> int:
        """Batch job: expire every record whose paid period is over."""
        now = self._clock()
        expired = 0
        for record in await self.store.list_lapsed(now):
            try:
                await self._expire(record, now)
                expired += 1
            except BillingError as e:
                logger.error("Failed to expire subscription for user %s: %s", record.user_id, e)
        if expired:
            logger.info("Expired %d lapsed subscriptions", expired)
        return expired

    async def refund_eligibility(self, user_id: str) -> state.RefundEligibility:
        record = await self.store.get_by_user_id(user_id)
        return state.refund_eligibility(record, self._clock(), self.refund_window_days)

    # --- Commands ---

    async def create_checkout(self, user_id: str, plan: str, email: str | None = None) -> CheckoutResult:
        """Open a Stripe Checkout Session and pre-register the record (best effort)."""
        _require_known_plan(plan)
        record = await self.store.get_by_user_id(user_id)
        state.ensure_can_checkout(record, plan, self.catalog)

        price_id = self.catalog.price_id_for(plan)
        if not price_id:
            raise ProviderError(f"No Stripe price configured for plan '{plan}'.")

        email = email or (record.customer_email if record else None)
        customer_id = record.provider_customer_id if record else None
        if customer_id is None:
            customer_id = await self.gateway.create_customer(user_id, email)

        session = await self.gateway.create_checkout_session(
            user_id=user_id,
            plan=plan,
            price_id=price_id,
            customer_id=customer_id,
            customer_email=email,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )

        changes, defaults = state.checkout_preregistration(session.id, email)
        changes["provider_customer_id"] = session.customer_id or customer_id
        try:
            await self.store.upsert_by_user_id(user_id, changes, defaults=defaults)
        except BillingError as e:
            logger.warning("Pre-registration for user %s failed (checkout continues): %s", user_id, e)

        await self._usage("checkout_initiated", user_id, plan=plan, sessionId=session.id)
        logger.info("Checkout session %s created for user %s (plan %s)", session.id, user_id, plan)
        return CheckoutResult(session_id=session.id, url=session.url, plan=plan)

    async def cancel_at_period_end(self, user_id: str) -> Subscription:
        """Schedule cancellation at period end. Entitlement is kept until ``end_date``."""
        record = await self._require(user_id)
        if state.ensure_can_schedule_cancellation(record):
            logger.info("Cancellation already scheduled for user %s (ends %s)", user_id, record.end_date)
            return record

        now = self._clock()
        period_end: datetime | None = None
        if record.payment_method == PaymentMethod.PROVIDER.value and record.provider_subscription_id:
            try:
                provider_sub = await self.gateway.update_subscription(
                    record.provider_subscription_id, cancel_at_period_end=True
                )
                period_end = provider_sub.current_period_end
            except ProviderResourceGoneError:
                logger.warning(
                    "Stripe subscription %s already gone, scheduling cancellation locally",
                    record.provider_subscription_id,
                )
        if period_end is None:
            period_end = (
                self.catalog.period_end_after(record.plan, record.start_date or now, now)
                or record.end_date
                or now
            )

        updated = await self._apply(
            user_id,
            state.scheduled_cancellation(period_end, now),
            expected_statuses=[SubscriptionStatus.ACTIVE.value],
        )
        if updated is None:
            current = await self._require(user_id)
            if state.is_scheduled_cancellation(current):
                return current
            raise ConcurrentModificationError(
                "Subscription changed while canceling. Please try again."
            )

        logger.info("Cancellation scheduled for user %s at %s", user_id, updated.end_date)
        await self._usage("subscription_canceled", user_id, plan=updated.plan, type="end_of_period")
        return updated

    async def reactivate(self, user_id: str) -> Subscription:
        """Undo a scheduled cancellation before the period ends."""
        record = await self._require(user_id)
        now = self._clock()
        state.ensure_can_reactivate(record, now)

        if record.payment_method == PaymentMethod.PROVIDER.value and record.provider_subscription_id:
            try:
                await self.gateway.update_subscription(
                    record.provider_subscription_id, cancel_at_period_end=False
                )
            except ProviderResourceGoneError as e:
                raise InvalidTransitionError(
                    "This subscription no longer exists at the payment provider and cannot be reactivated."
                ) from e

        updated = await self._apply(
            user_id,
            state.reactivation(now),
            expected_statuses=[SubscriptionStatus.CANCELED.value],
        )
        if updated is None:
            current = await self._require(user_id)
            if current.status == SubscriptionStatus.ACTIVE.value:
                return current
            raise ConcurrentModificationError(
                "Subscription changed while reactivating. Please try again."
            )

        logger.info("Subscription reactivated for user %s", user_id)
        await self._usage("subscription_reactivated", user_id, plan=updated.plan)
        return updated

    async def change_plan(self, user_id: str, new_plan: str) -> PlanChangeResult:
        """Swap the priced item at Stripe with proration. Role is unchanged."""
        _require_known_plan(new_plan)
        record = await self._require(user_id)
        state.ensure_can_change_plan(record, new_plan, self.catalog)

        price_id = self.catalog.price_id_for(new_plan)
        if not price_id:
            raise ProviderError(f"No Stripe price configured for plan '{new_plan}'.")

        now = self._clock()
        period_start, period_end = self.catalog.current_period(
            record.plan, record.start_date, record.end_date, now
        )
        estimate = self.catalog.estimate_proration(record.plan, new_plan, period_start, period_end, now)

        try:
            provider_sub = await self.gateway.update_subscription(
                record.provider_subscription_id, price_id=price_id
            )
        except ProviderResourceGoneError as e:
            raise InvalidTransitionError(
                "This subscription no longer exists at the payment provider."
            ) from e

        updated = await self._apply(
            user_id,
            state.plan_change(new_plan, provider_sub.price_id or price_id, provider_sub.current_period_end),
            expected_statuses=[SubscriptionStatus.ACTIVE.value],
        )
        if updated is None:
            raise ConcurrentModificationError(
                "Subscription changed while switching plan. Please try again."
            )

        logger.info("User %s changed plan %s -> %s (due %s)", user_id, record.plan, new_plan, estimate.amount_due)
        await self._usage(
            "subscription_upgraded",
            user_id,
            fromPlan=record.plan,
            toPlan=new_plan,
            amountDue=estimate.amount_due,
        )
        return PlanChangeResult(subscription=updated, proration=estimate)

    async def cancel_immediately(self, user_id: str) -> Subscription:
        """End the subscription now (admin path)."""
        record = await self._require(user_id)
        await self._cancel_at_provider(record)

        now = self._clock()
        updated = await self._apply(user_id, state.immediate_cancellation(now))
        await self._announce_immediate_cancellation(record, now)
        return updated

    async def _cancel_at_provider(self, record: Subscription, *, after_refund: bool = False) -> None:
        """Cancel the Stripe subscription now.

        Once money has gone back to the customer the local cancellation must
        happen regardless, so a Stripe failure is queued for retry instead of
        raised.
        """
        if record.payment_method != PaymentMethod.PROVIDER.value or not record.provider_subscription_id:
            return
        try:
            await self.gateway.cancel_subscription(record.provider_subscription_id)
        except ProviderResourceGoneError:
            logger.info(
                "Stripe subscription %s already gone, canceling locally",
                record.provider_subscription_id,
            )
        except ProviderError as e:
            if not after_refund:
                raise
            logger.error(
                "Stripe cancellation of %s failed after refunding user %s, queued for retry: %s",
                record.provider_subscription_id,
                record.user_id,
                e,
            )
            try:
                await self.outbox.enqueue(
                    PROVIDER_CANCEL,
                    {"user_id": record.user_id, "subscription_id": record.provider_subscription_id},
                    failure_reason=str(e),
                )
            except Exception:
                logger.exception(
                    "Could not queue Stripe cancellation of %s for user %s",
                    record.provider_subscription_id,
                    record.user_id,
                )

    async def retry_provider_cancel(self, payload: dict[str, Any]) -> None:
        """Outbox deliverer for a Stripe cancellation that failed after a refund."""
        try:
            await self.gateway.cancel_subscription(payload["subscription_id"])
        except ProviderResourceGoneError:
            logger.info("Stripe subscription %s already gone", payload["subscription_id"])

    async def _announce_immediate_cancellation(self, record: Subscription, now: datetime) -> None:
        logger.info("Subscription canceled immediately for user %s", record.user_id)
        await self._usage("subscription_canceled", record.user_id, plan=record.plan, type="immediate")
        await self._notify(
            "subscription_ended", record.customer_email, {"plan": record.plan, "endDate": now.isoformat()}
        )

    async def request_refund(self, user_id: str, reason: str) -> RefundResult:
        """Refund the last payment and end the subscription immediately."""
        reason = (reason or "").strip()
        if not reason:
            raise BillingValidationError("A refund reason is required.")

        record = await self._require(user_id)
        now = self._clock()
        state.ensure_refund_eligible(state.refund_eligibility(record, now, self.refund_window_days))

        amount = self.catalog.get(record.plan).price_cents
        refund_status = RefundStatus.MANUAL_PENDING
        refund_id: str | None = None

        if record.payment_method == PaymentMethod.PROVIDER.value:
            payment_intent = await self._resolve_payment_intent(record.last_transaction_id)
            if payment_intent:
                try:
                    receipt = await self.gateway.create_refund(
                        payment_intent, reason, {"userId": user_id}
                    )
                    refund_status = RefundStatus.PROCESSED
                    refund_id = receipt.id
                    amount = receipt.amount
                except ProviderResourceGoneError:
                    logger.warning(
                        "Payment intent %s not found, refund for user %s needs manual handling",
                        payment_intent,
                        user_id,
                    )

        await self._cancel_at_provider(record, after_refund=refund_status == RefundStatus.PROCESSED)

        # Refund fields and the cancellation land in one write
        now = self._clock()
        canceled = await self._apply(
            user_id,
            {
                **state.refund_recorded(refund_status, amount, reason, now),
                **state.immediate_cancellation(now),
            },
        )
        await self._announce_immediate_cancellation(record, now)

        logger.info("Refund %s for user %s: %s %s", refund_status.value, user_id, amount, self.catalog.currency)
        await self._notify(
            "refund_confirmation",
            record.customer_email,
            {
                "amount": self._amount(amount),
                "refundId": refund_id,
                "status": refund_status.value,
                "reason": reason,
            },
        )
        await self._usage("refund_requested", user_id, amount=amount, status=refund_status.value)
        return RefundResult(
            subscription=canceled,
            status=refund_status,
            amount=amount,
            currency=self.catalog.currency,
            refund_id=refund_id,
        )

    async def _resolve_payment_intent(self, transaction_id: str | None) -> str | None:
        if not transaction_id:
            return None
        if transaction_id.startswith("pi_"):
            return transaction_id
        if transaction_id.startswith("cs_"):
            try:
                return await self.gateway.retrieve_checkout_payment_intent(transaction_id)
            except ProviderResourceGoneError:
                return None
        return None

    async def reconcile_from_provider(self, user_id: str) -> Subscription:
        """Pull the Stripe subscription and mirror it. Fresh provider state wins."""
        record = await self._require(user_id)
        if not record.provider_subscription_id:
            raise InvalidTransitionError("This subscription is not billed through Stripe.")

        now = self._clock()
        try:
            provider_sub = await self.gateway.retrieve_subscription(record.provider_subscription_id)
        except ProviderResourceGoneError:
            logger.warning("Stripe subscription %s is gone, canceling locally", record.provider_subscription_id)
            return await self._apply(user_id, state.immediate_cancellation(now))

        updated = await self._apply(user_id, state.provider_mirror(provider_sub, self.catalog, now))
        logger.info("Reconciled user %s from Stripe: status=%s", user_id, updated.status)
        return updated

    # --- Provider events ---

    async def handle_event(self, event: WebhookEvent) -> WebhookOutcome:
        """Route a provider event. Events for unknown customers are dropped as no-ops."""
        try:
            if isinstance(event, CheckoutCompletedEvent):
                return await self.on_checkout_completed(event)
            if isinstance(event, SubscriptionUpdatedEvent):
                return await self.on_subscription_updated(event)
            if isinstance(event, SubscriptionDeletedEvent):
                return await self.on_subscription_deleted(event)
            if isinstance(event, InvoicePaidEvent):
                return await self.on_invoice_paid(event)
            if isinstance(event, InvoicePaymentFailedEvent):
                return await self.on_invoice_payment_failed(event)
        except CorrelationError as e:
            logger.warning("%s (event %s)", e, event.id)
            return WebhookOutcome(OutcomeStatus.NOOP, event.id, event.type, "no local record for customer")
        return WebhookOutcome(OutcomeStatus.IGNORED, event.id, event.type, "unhandled event type")

    async def _correlate(self, customer_id: str | None, subscription_id: str | None) -> Subscription:
        """Find the local record by Stripe customer, then by Stripe subscription.

        Raises:
            CorrelationError: Neither id matches a local record.
        """
        record = None
        if customer_id:
            record = await self.store.get_by_provider_customer_id(customer_id)
        if record is None and subscription_id:
            record = await self.store.get_by_provider_subscription_id(subscription_id)
        if record is None:
            raise CorrelationError(
                f"No local subscription for Stripe customer {customer_id} (subscription {subscription_id})"
            )
        return record

    @staticmethod
    def _superseded(record: Subscription, sub: ProviderSubscription) -> bool:
        return bool(record.provider_subscription_id) and record.provider_subscription_id != sub.id

    async def on_checkout_completed(self, event: CheckoutCompletedEvent) -> WebhookOutcome:
        session = event.session
        user_id = session.user_id
        if not user_id:
            logger.warning("Checkout session %s has no userId metadata, skipping", session.id)
            return WebhookOutcome(OutcomeStatus.NOOP, event.id, event.type, "missing userId metadata")

        provider_sub = None
        if session.subscription:
            try:
                provider_sub = await self.gateway.retrieve_subscription(session.subscription)
            except ProviderError as e:
                logger.warning(
                    "Could not fetch Stripe subscription %s for checkout %s: %s",
                    session.subscription,
                    session.id,
                    e,
                )

        changes = state.checkout_completion(session, provider_sub, self.catalog, event.created_at)
        record = await self._apply(user_id, changes, status_changed_before=event.created_at)
        if record is None:
            return WebhookOutcome(OutcomeStatus.STALE, event.id, event.type, "newer transition already applied", user_id)

        logger.info("Checkout completed for user %s: plan=%s status=%s", user_id, record.plan, record.status)
        amount = self._amount(session.amount_total, session.currency)
        email = session.email or record.customer_email
        await self._notify(
            "invoice",
            email,
            {
                "plan": record.plan,
                "amount": amount,
                "transactionId": record.last_transaction_id,
                "date": event.created_at.isoformat(),
            },
        )
        await self._notify(
            "subscription_started",
            email,
            {"plan": record.plan, "startDate": event.created_at.isoformat(), "amount": amount},
        )
        await self._usage("checkout_completed", user_id, plan=record.plan, sessionId=session.id)
        return WebhookOutcome(OutcomeStatus.PROCESSED, event.id, event.type, None, user_id)

    async def on_subscription_updated(self, event: SubscriptionUpdatedEvent) -> WebhookOutcome:
        sub = event.subscription
        record = await self._correlate(sub.customer_id, sub.id)
        if self._superseded(record, sub):
            logger.info(
                "Ignoring update for superseded Stripe subscription %s (user %s has %s)",
                sub.id,
                record.user_id,
                record.provider_subscription_id,
            )
            return WebhookOutcome(OutcomeStatus.NOOP, event.id, event.type, "superseded subscription", record.user_id)

        changes = state.provider_mirror(sub, self.catalog, event.created_at)
        updated = await self._apply(record.user_id, changes, status_changed_before=event.created_at)
        if updated is None:
            logger.info("Stale %s for user %s ignored", event.id, record.user_id)
            return WebhookOutcome(OutcomeStatus.STALE, event.id, event.type, "newer transition already applied", record.user_id)

        logger.info(
            "Mirrored Stripe subscription %s for user %s: status=%s cancel_at_period_end=%s",
            sub.id,
            record.user_id,
            updated.status,
            sub.cancel_at_period_end,
        )
        return WebhookOutcome(OutcomeStatus.PROCESSED, event.id, event.type, None, record.user_id)

    async def on_subscription_deleted(self, event: SubscriptionDeletedEvent) -> WebhookOutcome:
        sub = event.subscription
        record = await self._correlate(sub.customer_id, sub.id)
        if self._superseded(record, sub):
            logger.info(
                "Ignoring deletion of superseded Stripe subscription %s (user %s has %s)",
                sub.id,
                record.user_id,
                record.provider_subscription_id,
            )
            return WebhookOutcome(OutcomeStatus.NOOP, event.id, event.type, "superseded subscription", record.user_id)

        # Deletion always ends access, whatever the local ordering key says
        await self._apply(record.user_id, state.provider_deletion(sub, event.created_at))
        logger.info("Stripe subscription %s deleted, user %s downgraded", sub.id, record.user_id)
        await self._notify(
            "subscription_ended",
            record.customer_email,
            {"plan": record.plan, "endDate": (sub.ended_at or event.created_at).isoformat()},
        )
        await self._usage("subscription_canceled", record.user_id, plan=record.plan, type="provider")
        return WebhookOutcome(OutcomeStatus.PROCESSED, event.id, event.type, None, record.user_id)

    async def on_invoice_paid(self, event: InvoicePaidEvent) -> WebhookOutcome:
        invoice = event.invoice
        record = await self._correlate(invoice.customer, invoice.subscription)

        await self.store.upsert_by_user_id(record.user_id, state.invoice_payment(invoice, event.created_at))
        logger.info(
            "Invoice %s paid for user %s (%s, renewal=%s)",
            invoice.id,
            record.user_id,
            invoice.amount_paid,
            invoice.is_renewal,
        )
        if invoice.is_renewal:
            await self._notify(
                "invoice",
                invoice.customer_email or record.customer_email,
                {
                    "plan": record.plan,
                    "amount": self._amount(invoice.amount_paid, invoice.currency),
                    "transactionId": invoice.payment_intent or invoice.id,
                    "date": event.created_at.isoformat(),
                },
            )
            await self._usage("subscription_renewed", record.user_id, plan=record.plan, amount=invoice.amount_paid)
        return WebhookOutcome(OutcomeStatus.PROCESSED, event.id, event.type, None, record.user_id)

    async def on_invoice_payment_failed(self, event: InvoicePaymentFailedEvent) -> WebhookOutcome:
        invoice = event.invoice
        record = await self._correlate(invoice.customer, invoice.subscription)

        await self.store.upsert_by_user_id(record.user_id, state.invoice_failure(invoice, event.created_at))
        logger.warning(
            "Payment failed for user %s (invoice %s): %s",
            record.user_id,
            invoice.id,
            invoice.failure_reason,
        )
        next_attempt = ts_to_naive(invoice.next_payment_attempt)
        await self._notify(
            "payment_failed",
            invoice.customer_email or record.customer_email,
            {
                "amount": self._amount(invoice.amount_due, invoice.currency),
                "failureReason": invoice.failure_reason,
                "nextAttempt": next_attempt.isoformat() if next_attempt else None,
            },
        )
        return WebhookOutcome(OutcomeStatus.PROCESSED, event.id, event.type, None, record.user_id)
