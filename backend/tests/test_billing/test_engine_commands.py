"""Tests for the reconciliation engine's user commands.

Commands call Stripe first and only write locally once Stripe has confirmed,
so the failure paths below also check that the stored record is untouched.
"""

from datetime import datetime

import pytest

from app.billing.errors import (
    BillingValidationError,
    InvalidTransitionError,
    ProviderUnavailableError,
    RefundNotAllowedError,
    SubscriptionNotFoundError,
)
from app.billing.outbox import ENTITLEMENT_SYNC, PROVIDER_CANCEL
from app.models.subscription import RefundStatus
from app.models.user import Role


async def _role(context, user_id: str = "user_1") -> Role | None:
    return await context.notifier.get_role(user_id)


def _usage(services, event: str) -> list[dict]:
    return [e for e in services.usage_events if e["event"] == event]


# ---------------------------------------------------------------------------
# create_checkout
# ---------------------------------------------------------------------------


class TestCreateCheckout:
    async def test_new_user(self, engine, store, gateway, services):
        result = await engine.create_checkout("user_1", "monthly", "user_1@example.com")

        assert result.session_id == "cs_test_1"
        assert result.url.startswith("https://checkout.stripe.test/")
        assert gateway.calls_to("create_customer") == [{"user_id": "user_1", "email": "user_1@example.com"}]
        session_call = gateway.calls_to("create_checkout_session")[0]
        assert session_call["price_id"] == "price_monthly"
        assert session_call["customer_id"] == "cus_user_1"
        assert "{CHECKOUT_SESSION_ID}" in session_call["success_url"]

        record = await store.get_by_user_id("user_1")
        assert record.status == "incomplete"
        assert record.is_active is False
        assert record.checkout_session_id == "cs_test_1"
        assert record.provider_customer_id == "cus_user_1"
        assert _usage(services, "checkout_initiated")[0]["plan"] == "monthly"

    async def test_reuses_existing_customer(self, engine, gateway, make_subscription):
        await make_subscription(status="canceled", cancelation_type="immediate", is_active=False)
        await engine.create_checkout("user_1", "annual")
        assert gateway.calls_to("create_customer") == []
        assert gateway.calls_to("create_checkout_session")[0]["customer_id"] == "cus_test_1"

    async def test_preregistration_does_not_touch_status(self, engine, store, make_subscription):
        await make_subscription(status="canceled", cancelation_type="immediate", is_active=False)
        await engine.create_checkout("user_1", "annual")
        record = await store.get_by_user_id("user_1")
        assert record.status == "canceled"
        assert record.checkout_session_id == "cs_test_1"

    async def test_already_subscribed(self, engine, gateway, make_subscription):
        await make_subscription()
        with pytest.raises(InvalidTransitionError, match="already have an active"):
            await engine.create_checkout("user_1", "annual")
        assert gateway.calls == []

    async def test_unknown_plan_is_validation_error(self, engine):
        with pytest.raises(BillingValidationError):
            await engine.create_checkout("user_1", "platinum")

    async def test_premium_not_purchasable(self, engine):
        with pytest.raises(InvalidTransitionError):
            await engine.create_checkout("user_1", "premium")

    async def test_provider_unavailable_writes_nothing(self, engine, store, gateway):
        gateway.errors["create_checkout_session"] = ProviderUnavailableError("timeout")
        with pytest.raises(ProviderUnavailableError):
            await engine.create_checkout("user_1", "monthly")
        assert await store.get_by_user_id("user_1") is None


# ---------------------------------------------------------------------------
# cancel_at_period_end
# ---------------------------------------------------------------------------


class TestCancelAtPeriodEnd:
    async def test_schedules_cancellation(self, context, engine, gateway, services, make_subscription):
        await make_subscription()
        gateway.add_subscription()

        record = await engine.cancel_at_period_end("user_1")

        assert record.status == "canceled"
        assert record.cancelation_type == "end_of_period"
        assert record.is_active is True
        assert record.end_date == datetime(2024, 6, 15)
        assert gateway.calls_to("update_subscription") == [
            {"subscription_id": "sub_test_1", "cancel_at_period_end": True, "price_id": None}
        ]
        assert await _role(context) == Role.PREMIUM
        assert _usage(services, "subscription_canceled")[0]["type"] == "end_of_period"

    async def test_second_cancel_is_noop(self, engine, gateway, make_subscription):
        """Canceling twice makes no second Stripe call and changes nothing."""
        await make_subscription()
        gateway.add_subscription()

        first = await engine.cancel_at_period_end("user_1")
        second = await engine.cancel_at_period_end("user_1")

        assert len(gateway.calls_to("update_subscription")) == 1
        assert second.end_date == first.end_date
        assert second.status == "canceled"

    async def test_annual_end_date_from_provider(self, engine, gateway, make_subscription):
        await make_subscription(
            plan="annual", start_date=datetime(2024, 1, 1), end_date=datetime(2025, 1, 1),
            provider_price_id="price_annual",
        )
        gateway.add_subscription(
            price_id="price_annual", period_start=datetime(2024, 1, 1), period_end=datetime(2025, 1, 1)
        )
        record = await engine.cancel_at_period_end("user_1")
        assert record.end_date == datetime(2025, 1, 1)

    async def test_annual_end_date_computed_when_provider_gone(self, engine, gateway, make_subscription):
        """Stripe no longer knows the subscription: the period end is computed locally."""
        await make_subscription(
            plan="annual", start_date=datetime(2024, 1, 1), end_date=None, provider_price_id="price_annual"
        )
        record = await engine.cancel_at_period_end("user_1")
        assert len(gateway.calls_to("update_subscription")) == 1
        assert record.end_date == datetime(2025, 1, 1)
        assert record.status == "canceled"

    async def test_manual_subscription_skips_provider(self, engine, gateway, make_subscription):
        await make_subscription(
            plan="annual", start_date=datetime(2024, 1, 1), end_date=None,
            payment_method="manual", provider_subscription_id=None,
        )
        record = await engine.cancel_at_period_end("user_1")
        assert gateway.calls == []
        assert record.end_date == datetime(2025, 1, 1)

    async def test_undated_manual_record_gets_end_date(self, engine, store, clock, make_subscription):
        """With no dates on record the period is counted from now, so the record can still lapse."""
        await make_subscription(
            start_date=None, end_date=None, payment_method="manual", provider_subscription_id=None
        )

        record = await engine.cancel_at_period_end("user_1")
        assert record.end_date == datetime(2024, 7, 1, 12)

        clock.now = datetime(2024, 7, 2)
        assert await engine.expire_lapsed() == 1
        assert (await store.get_by_user_id("user_1")).is_active is False

    async def test_provider_unavailable_leaves_record(self, engine, store, gateway, make_subscription):
        await make_subscription()
        gateway.add_subscription()
        gateway.errors["update_subscription"] = ProviderUnavailableError("Stripe timed out")

        with pytest.raises(ProviderUnavailableError):
            await engine.cancel_at_period_end("user_1")

        record = await store.get_by_user_id("user_1")
        assert record.status == "active"
        assert record.cancelation_type == "none"

    async def test_suspended_rejected(self, engine, gateway, make_subscription):
        await make_subscription(status="suspended", is_active=False)
        with pytest.raises(InvalidTransitionError):
            await engine.cancel_at_period_end("user_1")
        assert gateway.calls == []

    async def test_no_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            await engine.cancel_at_period_end("nobody")


# ---------------------------------------------------------------------------
# reactivate
# ---------------------------------------------------------------------------


class TestReactivate:
    async def test_undoes_scheduled_cancellation(self, context, engine, gateway, services, make_subscription):
        await make_subscription()
        gateway.add_subscription()
        await engine.cancel_at_period_end("user_1")

        record = await engine.reactivate("user_1")

        assert record.status == "active"
        assert record.cancelation_type == "none"
        assert record.is_active is True
        assert gateway.calls_to("update_subscription")[-1]["cancel_at_period_end"] is False
        assert await _role(context) == Role.PREMIUM
        assert len(_usage(services, "subscription_reactivated")) == 1

    async def test_active_rejected(self, engine, make_subscription):
        await make_subscription()
        with pytest.raises(InvalidTransitionError, match="Only a canceled"):
            await engine.reactivate("user_1")

    async def test_immediate_cancellation_rejected(self, engine, gateway, make_subscription):
        await make_subscription(status="canceled", cancelation_type="immediate", is_active=False)
        with pytest.raises(InvalidTransitionError, match="canceled immediately"):
            await engine.reactivate("user_1")
        assert gateway.calls == []

    async def test_after_period_end_rejected(self, engine, clock, make_subscription):
        await make_subscription(status="canceled", cancelation_type="end_of_period")
        clock.now = datetime(2024, 6, 20)
        with pytest.raises(InvalidTransitionError, match="already ended"):
            await engine.reactivate("user_1")

    async def test_provider_gone_rejected(self, engine, store, make_subscription):
        await make_subscription(status="canceled", cancelation_type="end_of_period")
        with pytest.raises(InvalidTransitionError, match="no longer exists"):
            await engine.reactivate("user_1")
        assert (await store.get_by_user_id("user_1")).status == "canceled"


# ---------------------------------------------------------------------------
# change_plan
# ---------------------------------------------------------------------------


class TestChangePlan:
    async def test_monthly_to_annual(self, context, engine, gateway, services, make_subscription):
        """Plan becomes annual, end date follows Stripe's new period, role stays premium."""
        await make_subscription()
        await context.notifier.set_role("user_1", Role.PREMIUM)
        gateway.add_subscription()
        gateway.next_period_end = datetime(2025, 6, 1, 12)

        result = await engine.change_plan("user_1", "annual")

        record = result.subscription
        assert record.plan == "annual"
        assert record.status == "active"
        assert record.provider_price_id == "price_annual"
        assert record.end_date == datetime(2025, 6, 1, 12)
        assert await _role(context) == Role.PREMIUM
        assert gateway.calls_to("update_subscription")[0]["price_id"] == "price_annual"
        assert result.proration.charge == 9999
        assert result.proration.amount_due == result.proration.charge - result.proration.credit
        assert _usage(services, "subscription_upgraded")[0]["toPlan"] == "annual"

    async def test_same_plan_rejected(self, engine, gateway, make_subscription):
        await make_subscription()
        with pytest.raises(InvalidTransitionError, match="already on the monthly"):
            await engine.change_plan("user_1", "monthly")
        assert gateway.calls == []

    async def test_unknown_plan(self, engine, make_subscription):
        await make_subscription()
        with pytest.raises(BillingValidationError):
            await engine.change_plan("user_1", "gold")

    async def test_provider_unavailable_leaves_plan(self, engine, store, gateway, make_subscription):
        await make_subscription()
        gateway.add_subscription()
        gateway.errors["update_subscription"] = ProviderUnavailableError("Stripe timed out")
        with pytest.raises(ProviderUnavailableError):
            await engine.change_plan("user_1", "annual")
        assert (await store.get_by_user_id("user_1")).plan == "monthly"


# ---------------------------------------------------------------------------
# cancel_immediately
# ---------------------------------------------------------------------------


class TestCancelImmediately:
    async def test_ends_access_now(self, context, engine, gateway, services, clock, make_subscription):
        await make_subscription()
        gateway.add_subscription()

        record = await engine.cancel_immediately("user_1")

        assert record.status == "canceled"
        assert record.cancelation_type == "immediate"
        assert record.is_active is False
        assert record.end_date == clock.now
        assert gateway.calls_to("cancel_subscription") == [{"subscription_id": "sub_test_1"}]
        assert await _role(context) == Role.USER
        assert services.emails[0]["type"] == "subscription_ended"
        assert services.emails[0]["email"] == "user_1@example.com"

    async def test_already_gone_at_provider(self, engine, make_subscription):
        """A subscription Stripe already deleted is still canceled locally."""
        await make_subscription()
        record = await engine.cancel_immediately("user_1")
        assert record.is_active is False

    async def test_provider_unavailable_propagates(self, engine, store, gateway, make_subscription):
        await make_subscription()
        gateway.add_subscription()
        gateway.errors["cancel_subscription"] = ProviderUnavailableError("connection reset")
        with pytest.raises(ProviderUnavailableError):
            await engine.cancel_immediately("user_1")
        assert (await store.get_by_user_id("user_1")).is_active is True


# ---------------------------------------------------------------------------
# request_refund
# ---------------------------------------------------------------------------


class TestRequestRefund:
    async def test_refund_within_window(self, context, engine, gateway, services, make_subscription):
        await make_subscription()
        gateway.add_subscription()

        result = await engine.request_refund("user_1", "Not what I expected")

        assert result.status == RefundStatus.PROCESSED
        assert result.refund_id == "re_test_1"
        assert result.amount == 999
        refund_call = gateway.calls_to("create_refund")[0]
        assert refund_call["payment_intent_id"] == "pi_test_1"
        assert refund_call["metadata"] == {"userId": "user_1"}

        record = result.subscription
        assert record.refund_status == "processed"
        assert record.refund_amount == 999
        assert record.refund_reason == "Not what I expected"
        assert record.is_active is False
        assert record.cancelation_type == "immediate"
        assert await _role(context) == Role.USER
        assert "refund_confirmation" in [e["type"] for e in services.emails]

    async def test_checkout_session_resolved_to_payment_intent(self, engine, gateway, make_subscription):
        await make_subscription(last_transaction_id="cs_test_paid")
        gateway.payment_intents["cs_test_paid"] = "pi_from_session"
        result = await engine.request_refund("user_1", "duplicate purchase")
        assert result.status == RefundStatus.PROCESSED
        assert gateway.calls_to("create_refund")[0]["payment_intent_id"] == "pi_from_session"

    async def test_no_payment_intent_needs_manual_refund(self, engine, gateway, make_subscription):
        await make_subscription(last_transaction_id="cs_test_paid")
        gateway.payment_intents["cs_test_paid"] = None
        result = await engine.request_refund("user_1", "duplicate purchase")
        assert result.status == RefundStatus.MANUAL_PENDING
        assert result.refund_id is None
        assert gateway.calls_to("create_refund") == []
        assert result.subscription.is_active is False

    async def test_stripe_cancel_failure_after_refund_still_ends_access(
        self, context, engine, gateway, store, make_subscription
    ):
        await make_subscription()
        gateway.add_subscription()
        await context.notifier.set_role("user_1", Role.PREMIUM)
        gateway.errors["cancel_subscription"] = ProviderUnavailableError("Stripe timed out")

        result = await engine.request_refund("user_1", "Not for me")

        assert result.status == RefundStatus.PROCESSED
        record = await store.get_by_user_id("user_1")
        assert record.refund_status == "processed"
        assert record.status == "canceled"
        assert record.cancelation_type == "immediate"
        assert record.is_active is False
        assert await _role(context) == Role.USER

        # The Stripe cancellation is retried from the outbox
        [entry] = [e for e in await context.outbox.pending() if e.kind == PROVIDER_CANCEL]
        assert entry.payload == {"user_id": "user_1", "subscription_id": "sub_test_1"}
        del gateway.errors["cancel_subscription"]
        report = await context.outbox.sweep()
        assert report.delivered == 1
        assert gateway.subscriptions["sub_test_1"].status == "canceled"
        assert await context.outbox.pending() == []

    async def test_stripe_cancel_failure_without_refund_changes_nothing(
        self, engine, gateway, store, make_subscription
    ):
        """No money moved, so the error surfaces and the user can retry."""
        await make_subscription(last_transaction_id="cs_test_paid")
        gateway.add_subscription()
        gateway.payment_intents["cs_test_paid"] = None
        gateway.errors["cancel_subscription"] = ProviderUnavailableError("Stripe timed out")

        with pytest.raises(ProviderUnavailableError):
            await engine.request_refund("user_1", "Not for me")

        record = await store.get_by_user_id("user_1")
        assert record.refund_status == "none"
        assert record.is_active is True
        assert (await engine.refund_eligibility("user_1")).eligible is True

    async def test_manual_payment(self, engine, gateway, make_subscription):
        await make_subscription(payment_method="manual", provider_subscription_id=None)
        result = await engine.request_refund("user_1", "bank transfer")
        assert result.status == RefundStatus.MANUAL_PENDING
        assert gateway.calls == []

    async def test_outside_window(self, engine, gateway, store, make_subscription):
        await make_subscription(last_payment_date=datetime(2024, 4, 1))
        with pytest.raises(RefundNotAllowedError, match="30 days"):
            await engine.request_refund("user_1", "too late")
        assert gateway.calls == []
        assert (await store.get_by_user_id("user_1")).is_active is True

    async def test_already_refunded(self, engine, make_subscription):
        await make_subscription(refund_status="processed")
        with pytest.raises(RefundNotAllowedError):
            await engine.request_refund("user_1", "again")

    async def test_reason_required(self, engine, make_subscription):
        await make_subscription()
        with pytest.raises(BillingValidationError):
            await engine.request_refund("user_1", "   ")

    async def test_eligibility_query(self, engine, make_subscription):
        await make_subscription()
        eligibility = await engine.refund_eligibility("user_1")
        assert eligibility.eligible is True
        assert eligibility.deadline == datetime(2024, 6, 14)


# ---------------------------------------------------------------------------
# Expiry, reconciliation and entitlement
# ---------------------------------------------------------------------------


class TestExpiry:
    async def test_lapsed_record_expired_on_read(self, context, engine, clock, services, make_subscription):
        await make_subscription(status="canceled", cancelation_type="end_of_period")
        await context.notifier.set_role("user_1", Role.PREMIUM)
        clock.now = datetime(2024, 6, 16)

        record = await engine.get_subscription("user_1")

        assert record.is_active is False
        assert record.status == "canceled"
        assert await _role(context) == Role.USER
        assert services.emails[0]["type"] == "subscription_ended"

    async def test_active_record_untouched_on_read(self, engine, make_subscription):
        await make_subscription()
        record = await engine.get_subscription("user_1")
        assert record.is_active is True

    async def test_expire_lapsed_batch(self, engine, store, clock, make_subscription):
        await make_subscription("a", status="canceled", cancelation_type="end_of_period",
                                provider_customer_id="cus_a", provider_subscription_id="sub_a")
        await make_subscription("b", payment_method="manual",
                                provider_customer_id=None, provider_subscription_id=None)
        await make_subscription("c", provider_customer_id="cus_c", provider_subscription_id="sub_c")
        clock.now = datetime(2024, 7, 1)

        assert await engine.expire_lapsed() == 2
        assert (await store.get_by_user_id("a")).is_active is False
        assert (await store.get_by_user_id("b")).status == "canceled"
        assert (await store.get_by_user_id("c")).is_active is True


class TestReconcileFromProvider:
    async def test_mirrors_provider_state(self, engine, gateway, make_subscription):
        await make_subscription()
        gateway.add_subscription(cancel_at_period_end=True, period_end=datetime(2024, 6, 15))
        record = await engine.reconcile_from_provider("user_1")
        assert record.status == "canceled"
        assert record.cancelation_type == "end_of_period"
        assert record.is_active is True

    async def test_gone_subscription_canceled_locally(self, context, engine, make_subscription):
        await make_subscription()
        record = await engine.reconcile_from_provider("user_1")
        assert record.is_active is False
        assert record.cancelation_type == "immediate"
        assert await _role(context) == Role.USER

    async def test_manual_subscription_rejected(self, engine, make_subscription):
        await make_subscription(payment_method="manual", provider_subscription_id=None)
        with pytest.raises(InvalidTransitionError):
            await engine.reconcile_from_provider("user_1")

    async def test_provider_error_propagates(self, engine, gateway, make_subscription):
        await make_subscription()
        gateway.errors["retrieve_subscription"] = ProviderUnavailableError("down")
        with pytest.raises(ProviderUnavailableError):
            await engine.reconcile_from_provider("user_1")


class TestEntitlementFailure:
    @pytest.fixture
    def notifier(self, failing_notifier):
        return failing_notifier

    async def test_transition_survives_role_failure(self, context, engine, gateway, make_subscription):
        """The role update failing never aborts the transition; a sync is queued."""
        await make_subscription()
        gateway.add_subscription()

        record = await engine.cancel_immediately("user_1")

        assert record.is_active is False
        pending = await context.outbox.pending()
        syncs = [e for e in pending if e.kind == ENTITLEMENT_SYNC]
        assert len(syncs) == 1
        assert syncs[0].payload == {"user_id": "user_1"}
        assert "role service unreachable" in syncs[0].failure_reason

    async def test_sync_retried_by_sweep(self, context, engine, failing_notifier, make_subscription):
        await make_subscription()
        await engine.cancel_immediately("user_1")

        report = await context.outbox.sweep()

        assert report.failed == 1
        assert failing_notifier.attempts[-1] == ("user_1", Role.USER)


class TestSyncEntitlement:
    async def test_recomputes_role_from_record(self, context, engine, make_subscription):
        await make_subscription()
        assert await engine.sync_entitlement("user_1") == Role.PREMIUM
        assert await _role(context) == Role.PREMIUM

    async def test_unknown_user_gets_user_role(self, context, engine):
        assert await engine.sync_entitlement("ghost") == Role.USER
