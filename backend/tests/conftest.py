"""Shared test configuration and fixtures.

Every test gets a fresh schema on an in-memory SQLite database (set
``TEST_DATABASE_URL`` to run against PostgreSQL instead), a fake Stripe
gateway, a fixed clock and an httpx mock transport standing in for the
notification and metrics services.
"""

import dataclasses
import json
import os
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.billing.context import BillingContext, build_context
from app.billing.errors import ProviderResourceGoneError
from app.billing.events import ProviderSubscription
from app.billing.stripe_client import CheckoutSessionResult, RefundReceipt
from app.config import Settings
from app.database import Base, build_engine
from app.main import create_app
from app.models.user import Role

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")

NOW = datetime(2024, 6, 1, 12, 0, 0)


def to_ts(dt: datetime) -> int:
    """Naive UTC datetime -> Stripe Unix timestamp."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


# ---------------------------------------------------------------------------
# Fakes for external collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock the tests can move."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeGateway:
    """In-memory ``ProviderGateway`` that records every call.

    ``errors`` maps a method name to an exception raised on every call to it.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.errors: dict[str, Exception] = {}
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.payment_intents: dict[str, str | None] = {}
        self.refund_amount: int | None = None
        # Period end Stripe reports after a price swap
        self.next_period_end: datetime | None = None
        self._sessions = 0

    def _record(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        if name in self.errors:
            raise self.errors[name]

    def calls_to(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for called, kwargs in self.calls if called == name]

    def add_subscription(
        self,
        sub_id: str = "sub_test_1",
        customer_id: str = "cus_test_1",
        price_id: str = "price_monthly",
        status: str = "active",
        period_start: datetime | None = datetime(2024, 5, 15),
        period_end: datetime | None = datetime(2024, 6, 15),
        cancel_at_period_end: bool = False,
    ) -> ProviderSubscription:
        sub = ProviderSubscription(
            id=sub_id,
            customer_id=customer_id,
            status=status,
            price_id=price_id,
            item_id=f"si_{sub_id}",
            cancel_at_period_end=cancel_at_period_end,
            current_period_start=period_start,
            current_period_end=period_end,
        )
        self.subscriptions[sub_id] = sub
        return sub

    def _require(self, subscription_id: str) -> ProviderSubscription:
        if subscription_id not in self.subscriptions:
            raise ProviderResourceGoneError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def create_customer(self, user_id: str, email: str | None) -> str:
        self._record("create_customer", user_id=user_id, email=email)
        return f"cus_{user_id}"

    async def create_checkout_session(self, **kwargs: Any) -> CheckoutSessionResult:
        self._record("create_checkout_session", **kwargs)
        self._sessions += 1
        session_id = f"cs_test_{self._sessions}"
        return CheckoutSessionResult(
            id=session_id,
            url=f"https://checkout.stripe.test/c/pay/{session_id}",
            customer_id=kwargs.get("customer_id"),
        )

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return self._require(subscription_id)

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        cancel_at_period_end: bool | None = None,
        price_id: str | None = None,
    ) -> ProviderSubscription:
        self._record(
            "update_subscription",
            subscription_id=subscription_id,
            cancel_at_period_end=cancel_at_period_end,
            price_id=price_id,
        )
        sub = self._require(subscription_id)
        if cancel_at_period_end is not None:
            sub = dataclasses.replace(sub, cancel_at_period_end=cancel_at_period_end)
        if price_id is not None:
            sub = dataclasses.replace(
                sub,
                price_id=price_id,
                current_period_end=self.next_period_end or sub.current_period_end,
            )
        self.subscriptions[subscription_id] = sub
        return sub

    async def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._record("cancel_subscription", subscription_id=subscription_id)
        sub = dataclasses.replace(self._require(subscription_id), status="canceled")
        self.subscriptions[subscription_id] = sub
        return sub

    async def retrieve_checkout_payment_intent(self, session_id: str) -> str | None:
        self._record("retrieve_checkout_payment_intent", session_id=session_id)
        if session_id not in self.payment_intents:
            raise ProviderResourceGoneError(f"No such checkout session: {session_id}")
        return self.payment_intents[session_id]

    async def create_refund(
        self, payment_intent_id: str, reason: str, metadata: dict[str, str]
    ) -> RefundReceipt:
        self._record(
            "create_refund", payment_intent_id=payment_intent_id, reason=reason, metadata=metadata
        )
        return RefundReceipt(id="re_test_1", amount=self.refund_amount or 999, status="succeeded")


class FailingNotifier:
    """Entitlement notifier whose role service is down."""

    def __init__(self) -> None:
        self.attempts: list[tuple[str, Role]] = []

    async def set_role(self, user_id: str, role: Role) -> None:
        self.attempts.append((user_id, role))
        raise ConnectionError("role service unreachable")


class ServiceRecorder:
    """Mock transport handler for the notification and metrics services."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.failing = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failing:
            return httpx.Response(503, json={"success": False, "message": "down"})
        return httpx.Response(200, json={"success": True})

    def bodies(self, path: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    @property
    def emails(self) -> list[dict[str, Any]]:
        return self.bodies("/api/notifications/email")

    @property
    def usage_events(self) -> list[dict[str, Any]]:
        return self.bodies("/metrics/usage")


# ---------------------------------------------------------------------------
# Stripe event payloads
# ---------------------------------------------------------------------------


class EventFactory:
    """Builds raw Stripe event bodies as the webhook endpoint receives them."""

    def __init__(self) -> None:
        self._counter = 0

    def _event(self, event_type: str, obj: dict[str, Any], created: datetime, event_id: str | None) -> dict:
        self._counter += 1
        return {
            "id": event_id or f"evt_test_{self._counter}",
            "object": "event",
            "type": event_type,
            "created": to_ts(created),
            "livemode": False,
            "data": {"object": obj},
        }

    def checkout_completed(
        self,
        user_id: str | None = "user_1",
        plan: str | None = "monthly",
        session_id: str = "cs_test_paid",
        customer: str | None = "cus_test_1",
        subscription: str | None = "sub_test_1",
        payment_intent: str | None = "pi_test_1",
        email: str | None = "user_1@example.com",
        amount_total: int = 999,
        created: datetime = NOW,
        event_id: str | None = None,
    ) -> dict:
        metadata = {}
        if user_id:
            metadata["userId"] = user_id
        if plan:
            metadata["plan"] = plan
        obj = {
            "id": session_id,
            "object": "checkout.session",
            "customer": customer,
            "subscription": subscription,
            "client_reference_id": user_id,
            "metadata": metadata,
            "amount_total": amount_total,
            "currency": "eur",
            "payment_intent": payment_intent,
            "customer_details": {"email": email},
        }
        return self._event("checkout.session.completed", obj, created, event_id)

    def subscription_object(
        self,
        sub_id: str = "sub_test_1",
        customer: str = "cus_test_1",
        status: str = "active",
        price_id: str = "price_monthly",
        cancel_at_period_end: bool = False,
        period_start: datetime = datetime(2024, 5, 15),
        period_end: datetime = datetime(2024, 6, 15),
        ended_at: datetime | None = None,
    ) -> dict:
        # Basil layout: billing periods live on the subscription item
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "ended_at": to_ts(ended_at) if ended_at else None,
            "items": {
                "object": "list",
                "data": [
                    {
                        "id": f"si_{sub_id}",
                        "price": {"id": price_id},
                        "current_period_start": to_ts(period_start),
                        "current_period_end": to_ts(period_end),
                    }
                ],
            },
            "metadata": {},
        }

    def subscription_updated(self, created: datetime = NOW, event_id: str | None = None, **fields) -> dict:
        return self._event(
            "customer.subscription.updated", self.subscription_object(**fields), created, event_id
        )

    def subscription_deleted(self, created: datetime = NOW, event_id: str | None = None, **fields) -> dict:
        fields.setdefault("status", "canceled")
        return self._event(
            "customer.subscription.deleted", self.subscription_object(**fields), created, event_id
        )

    def invoice(
        self,
        event_type: str = "invoice.paid",
        invoice_id: str = "in_test_1",
        customer: str = "cus_test_1",
        subscription: str = "sub_test_1",
        billing_reason: str = "subscription_cycle",
        amount: int = 999,
        payment_intent: str | None = "pi_test_renewal",
        failure_message: str | None = None,
        created: datetime = NOW,
        event_id: str | None = None,
    ) -> dict:
        obj: dict[str, Any] = {
            "id": invoice_id,
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "billing_reason": billing_reason,
            "amount_paid": amount if event_type == "invoice.paid" else 0,
            "amount_due": amount,
            "currency": "eur",
            "payment_intent": payment_intent,
            "customer_email": "user_1@example.com",
            "status_transitions": {"paid_at": to_ts(created)},
        }
        if failure_message:
            obj["last_finalization_error"] = {"message": failure_message}
        return self._event(event_type, obj, created, event_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        jwt_secret_key="test-secret-key-for-billing-tests",
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret="whsec_test_secret",
        stripe_price_monthly_id="price_monthly",
        stripe_price_annual_id="price_annual",
        stripe_price_premium_id="price_premium",
        notification_service_url="http://notifications.test",
        metrics_service_url="http://metrics.test",
        service_api_key="svc-test-key",
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def db_engine():
    """Engine with a freshly created schema, dropped after the test."""
    options: dict[str, Any] = {}
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        options = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    engine = build_engine(TEST_DATABASE_URL, **options)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services() -> ServiceRecorder:
    return ServiceRecorder()


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def notifier():
    """None means the real ``UserRoleNotifier``; override to inject a fake."""
    return None


@pytest_asyncio.fixture
async def context(
    settings, db_engine, gateway, clock, services, notifier
) -> AsyncGenerator[BillingContext, None]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(services.handler))
    ctx = build_context(
        settings,
        db_engine=db_engine,
        gateway=gateway,
        notifier=notifier,
        http_client=http,
        clock=clock,
    )
    yield ctx
    await http.aclose()


@pytest.fixture
def engine(context):
    return context.engine


@pytest.fixture
def store(context):
    return context.store


@pytest_asyncio.fixture
async def client(context) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the app built around the test context."""
    app = create_app(context=context)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def auth_headers(settings) -> dict[str, str]:
    """Bearer headers for ``user_1``."""
    token = create_access_token("user_1", settings.jwt_secret_key)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_subscription(store):
    """Seed a subscription record directly through the store."""

    async def _make(user_id: str = "user_1", **fields):
        values = {
            "plan": "monthly",
            "status": "active",
            "is_active": True,
            "cancelation_type": "none",
            "start_date": datetime(2024, 5, 15),
            "end_date": datetime(2024, 6, 15),
            "payment_method": "provider",
            "provider_customer_id": "cus_test_1",
            "provider_subscription_id": "sub_test_1",
            "provider_price_id": "price_monthly",
            "customer_email": f"{user_id}@example.com",
            "last_payment_date": datetime(2024, 5, 15),
            "last_transaction_id": "pi_test_1",
            "payment_status": "success",
        }
        values.update(fields)
        return await store.upsert_by_user_id(user_id, values)

    return _make
