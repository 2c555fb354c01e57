"""Async Stripe gateway: the only module that talks to the Stripe API.

Every call is bounded by ``stripe_timeout_seconds``. Stripe exceptions are
translated into the billing error taxonomy so callers can tell a retryable
outage from a resource that is already gone.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol, TypeVar

import stripe
from stripe import StripeClient

from app.billing.errors import (
    ProviderError,
    ProviderResourceGoneError,
    ProviderUnavailableError,
    RefundNotAllowedError,
)
from app.billing.events import ProviderSubscription, StripeSubscriptionPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CheckoutSessionResult:
    id: str
    url: str | None
    customer_id: str | None


@dataclass(frozen=True)
class RefundReceipt:
    id: str
    amount: int  # minor units
    status: str


class ProviderGateway(Protocol):
    """Operations the reconciliation engine needs from the payment provider."""

    async def create_customer(self, user_id: str, email: str | None) -> str: ...

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        plan: str,
        price_id: str,
        customer_id: str | None,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionResult: ...

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        cancel_at_period_end: bool | None = None,
        price_id: str | None = None,
    ) -> ProviderSubscription: ...

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription: ...

    async def retrieve_checkout_payment_intent(self, session_id: str) -> str | None: ...

    async def create_refund(
        self, payment_intent_id: str, reason: str, metadata: dict[str, str]
    ) -> RefundReceipt: ...


def subscription_from_stripe(stripe_sub) -> ProviderSubscription:
    """Parse a ``stripe.Subscription`` (or equivalent dict) into a snapshot."""
    return StripeSubscriptionPayload.model_validate(stripe_sub).to_snapshot()


class StripeGateway:
    """``ProviderGateway`` backed by ``stripe.StripeClient`` with async HTTPX."""

    def __init__(
        self,
        secret_key: str,
        timeout_seconds: float = 5.0,
        client: StripeClient | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._client = client or StripeClient(
            secret_key,
            http_client=stripe.HTTPXClient(timeout=timeout_seconds),
        )

    async def _call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Stripe %s timed out after %ss", operation, self._timeout)
            raise ProviderUnavailableError(
                f"Payment provider did not answer in time ({operation})."
            ) from e
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing" or e.http_status == 404:
                logger.info("Stripe %s: resource already gone (%s)", operation, e.user_message)
                raise ProviderResourceGoneError(
                    f"Payment provider resource no longer exists ({operation})."
                ) from e
            if e.code == "charge_already_refunded":
                raise RefundNotAllowedError("This payment has already been refunded.") from e
            logger.error("Stripe %s rejected: %s", operation, e)
            raise ProviderError(f"Payment provider rejected {operation}: {e.user_message or e}") from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("Stripe %s unavailable: %s", operation, e)
            raise ProviderUnavailableError(
                f"Payment provider temporarily unavailable ({operation})."
            ) from e
        except stripe.APIError as e:
            logger.warning("Stripe %s server error: %s", operation, e)
            raise ProviderUnavailableError(
                f"Payment provider temporarily unavailable ({operation})."
            ) from e
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", operation, e)
            raise ProviderError(f"Payment provider error during {operation}: {e.user_message or e}") from e

    async def create_customer(self, user_id: str, email: str | None) -> str:
        """Create a Stripe customer linked to a local user."""
        logger.info("Creating Stripe customer for user %s", user_id)
        params: dict = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        customer = await self._call(
            "customer creation", self._client.v1.customers.create_async(params=params)
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        plan: str,
        price_id: str,
        customer_id: str | None,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionResult:
        """Create a Stripe Checkout Session in subscription mode."""
        logger.info("Creating checkout session for user %s, plan %s", user_id, plan)
        params: dict = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": {"userId": user_id, "plan": plan},
            "subscription_data": {"metadata": {"userId": user_id, "plan": plan}},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        session = await self._call(
            "checkout session creation",
            self._client.v1.checkout.sessions.create_async(params=params),
        )
        return CheckoutSessionResult(
            id=session.id,
            url=session.url,
            customer_id=session.get("customer"),
        )

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        stripe_sub = await self._call(
            "subscription retrieval",
            self._client.v1.subscriptions.retrieve_async(subscription_id),
        )
        return subscription_from_stripe(stripe_sub)

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        cancel_at_period_end: bool | None = None,
        price_id: str | None = None,
    ) -> ProviderSubscription:
        """Toggle scheduled cancellation and/or swap the priced item (prorated)."""
        params: dict = {}
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        if price_id is not None:
            current = await self.retrieve_subscription(subscription_id)
            if current.item_id is None:
                raise ProviderError(f"Subscription {subscription_id} has no item to update.")
            params["items"] = [{"id": current.item_id, "price": price_id}]
            params["proration_behavior"] = "create_prorations"
        logger.info("Updating Stripe subscription %s: %s", subscription_id, sorted(params))
        stripe_sub = await self._call(
            "subscription update",
            self._client.v1.subscriptions.update_async(subscription_id, params=params),
        )
        return subscription_from_stripe(stripe_sub)

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Cancel immediately (no end-of-period grace)."""
        logger.info("Canceling Stripe subscription %s immediately", subscription_id)
        stripe_sub = await self._call(
            "subscription cancellation",
            self._client.v1.subscriptions.cancel_async(subscription_id),
        )
        return subscription_from_stripe(stripe_sub)

    async def retrieve_checkout_payment_intent(self, session_id: str) -> str | None:
        session = await self._call(
            "checkout session retrieval",
            self._client.v1.checkout.sessions.retrieve_async(session_id),
        )
        return session.get("payment_intent")

    async def create_refund(
        self, payment_intent_id: str, reason: str, metadata: dict[str, str]
    ) -> RefundReceipt:
        logger.info("Creating Stripe refund for payment intent %s", payment_intent_id)
        refund = await self._call(
            "refund creation",
            self._client.v1.refunds.create_async(
                params={
                    "payment_intent": payment_intent_id,
                    "reason": "requested_by_customer",
                    "metadata": {**metadata, "refundReason": reason},
                }
            ),
        )
        return RefundReceipt(id=refund.id, amount=refund.amount, status=refund.status)
