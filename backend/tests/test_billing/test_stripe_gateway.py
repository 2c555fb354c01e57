"""Tests for the Stripe gateway: request parameters and error translation.

``StripeClient`` is replaced by a MagicMock whose ``*_async`` methods are
AsyncMocks, so no network call is made.
"""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from app.billing.errors import (
    ProviderError,
    ProviderResourceGoneError,
    ProviderUnavailableError,
    RefundNotAllowedError,
)
from app.billing.stripe_client import StripeGateway


def _stripe_subscription(**overrides) -> dict:
    sub = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_123",
                    "price": {"id": "price_monthly"},
                    "current_period_start": 1715731200,  # 2024-05-15
                    "current_period_end": 1718409600,  # 2024-06-15
                }
            ],
        },
        "metadata": {"userId": "user_1"},
    }
    sub.update(overrides)
    return sub


@pytest.fixture
def stripe_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def gateway(stripe_client) -> StripeGateway:
    return StripeGateway("sk_test_fake", timeout_seconds=0.5, client=stripe_client)


class TestRequests:
    async def test_create_customer(self, gateway, stripe_client):
        stripe_client.v1.customers.create_async = AsyncMock(return_value=MagicMock(id="cus_new"))

        assert await gateway.create_customer("user_1", "a@example.com") == "cus_new"
        params = stripe_client.v1.customers.create_async.call_args.kwargs["params"]
        assert params == {"metadata": {"userId": "user_1"}, "email": "a@example.com"}

    async def test_checkout_session(self, gateway, stripe_client):
        session = MagicMock(id="cs_123", url="https://checkout.stripe.com/c/pay/cs_123")
        session.get.return_value = "cus_123"
        stripe_client.v1.checkout.sessions.create_async = AsyncMock(return_value=session)

        result = await gateway.create_checkout_session(
            user_id="user_1",
            plan="annual",
            price_id="price_annual",
            customer_id="cus_123",
            customer_email="a@example.com",
            success_url="https://app.test/billing?session_id={CHECKOUT_SESSION_ID}",
            cancel_url="https://app.test/pricing",
        )

        assert result.id == "cs_123"
        assert result.customer_id == "cus_123"
        params = stripe_client.v1.checkout.sessions.create_async.call_args.kwargs["params"]
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_annual", "quantity": 1}]
        assert params["metadata"] == {"userId": "user_1", "plan": "annual"}
        assert params["client_reference_id"] == "user_1"
        assert params["customer"] == "cus_123"
        assert "customer_email" not in params

    async def test_retrieve_subscription_snapshot(self, gateway, stripe_client):
        stripe_client.v1.subscriptions.retrieve_async = AsyncMock(return_value=_stripe_subscription())

        sub = await gateway.retrieve_subscription("sub_123")

        assert sub.price_id == "price_monthly"
        assert sub.item_id == "si_123"
        assert sub.current_period_end == datetime(2024, 6, 15)

    async def test_schedule_cancellation(self, gateway, stripe_client):
        stripe_client.v1.subscriptions.update_async = AsyncMock(
            return_value=_stripe_subscription(cancel_at_period_end=True)
        )

        sub = await gateway.update_subscription("sub_123", cancel_at_period_end=True)

        assert sub.cancel_at_period_end is True
        call = stripe_client.v1.subscriptions.update_async.call_args
        assert call.args == ("sub_123",)
        assert call.kwargs["params"] == {"cancel_at_period_end": True}

    async def test_price_change_swaps_item_with_proration(self, gateway, stripe_client):
        stripe_client.v1.subscriptions.retrieve_async = AsyncMock(return_value=_stripe_subscription())
        stripe_client.v1.subscriptions.update_async = AsyncMock(return_value=_stripe_subscription())

        await gateway.update_subscription("sub_123", price_id="price_annual")

        params = stripe_client.v1.subscriptions.update_async.call_args.kwargs["params"]
        assert params["items"] == [{"id": "si_123", "price": "price_annual"}]
        assert params["proration_behavior"] == "create_prorations"

    async def test_refund(self, gateway, stripe_client):
        stripe_client.v1.refunds.create_async = AsyncMock(
            return_value=MagicMock(id="re_123", amount=999, status="succeeded")
        )

        receipt = await gateway.create_refund("pi_123", "Not for me", {"userId": "user_1"})

        assert (receipt.id, receipt.amount, receipt.status) == ("re_123", 999, "succeeded")
        params = stripe_client.v1.refunds.create_async.call_args.kwargs["params"]
        assert params["payment_intent"] == "pi_123"
        assert params["metadata"] == {"userId": "user_1", "refundReason": "Not for me"}


class TestErrorTranslation:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (
                stripe.InvalidRequestError("No such subscription", "id", code="resource_missing", http_status=404),
                ProviderResourceGoneError,
            ),
            (
                stripe.InvalidRequestError("Charge already refunded", None, code="charge_already_refunded", http_status=400),
                RefundNotAllowedError,
            ),
            (stripe.InvalidRequestError("Invalid price", "price", http_status=400), ProviderError),
            (stripe.APIConnectionError("Network error"), ProviderUnavailableError),
            (stripe.RateLimitError("Too many requests"), ProviderUnavailableError),
            (stripe.APIError("Internal error", http_status=500), ProviderUnavailableError),
            (stripe.AuthenticationError("Invalid API key"), ProviderError),
        ],
    )
    async def test_stripe_errors(self, gateway, stripe_client, error, expected):
        stripe_client.v1.subscriptions.cancel_async = AsyncMock(side_effect=error)
        with pytest.raises(expected) as exc_info:
            await gateway.cancel_subscription("sub_123")
        assert exc_info.type is expected

    async def test_timeout_is_unavailable(self, gateway, stripe_client):
        async def stalled(*args, **kwargs):
            await asyncio.sleep(5)

        stripe_client.v1.subscriptions.retrieve_async = stalled
        with pytest.raises(ProviderUnavailableError, match="did not answer in time"):
            await gateway.retrieve_subscription("sub_123")

    async def test_item_missing_on_price_change(self, gateway, stripe_client):
        stripe_client.v1.subscriptions.retrieve_async = AsyncMock(
            return_value=_stripe_subscription(items={"object": "list", "data": []})
        )
        with pytest.raises(ProviderError, match="no item"):
            await gateway.update_subscription("sub_123", price_id="price_annual")
