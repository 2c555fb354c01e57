"""Billing context: every collaborator, built once at startup.

``create_app`` stores the context on ``app.state``; routes, jobs and
scripts read it from there instead of module-level singletons.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.billing.engine import ReconciliationEngine
from app.billing.entitlements import EntitlementNotifier, UserRoleNotifier
from app.billing.notifications import MetricsClient, NotificationClient
from app.billing.outbox import (
    ENTITLEMENT_SYNC,
    NOTIFICATION,
    PROVIDER_CANCEL,
    USAGE_EVENT,
    OutboxService,
)
from app.billing.plans import PlanCatalog, build_plan_catalog
from app.billing.stripe_client import ProviderGateway, StripeGateway
from app.billing.webhooks import WebhookIngress
from app.config import Settings
from app.database import build_engine, build_session_factory, utcnow
from app.services.subscription_service import SubscriptionStore


@dataclass
class BillingContext:
    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    catalog: PlanCatalog
    gateway: ProviderGateway
    store: SubscriptionStore
    notifier: EntitlementNotifier
    outbox: OutboxService
    engine: ReconciliationEngine
    ingress: WebhookIngress
    http: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.db_engine.dispose()


def build_context(
    settings: Settings,
    *,
    db_engine: AsyncEngine | None = None,
    gateway: ProviderGateway | None = None,
    notifier: EntitlementNotifier | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> BillingContext:
    """Wire the billing stack. Tests pass fakes for the external pieces."""
    db_engine = db_engine or build_engine(settings.async_database_url, echo=settings.debug)
    session_factory = build_session_factory(db_engine)
    catalog = build_plan_catalog(settings)
    gateway = gateway or StripeGateway(settings.stripe_secret_key, settings.stripe_timeout_seconds)
    store = SubscriptionStore(session_factory)
    notifier = notifier or UserRoleNotifier(session_factory)
    http = http_client or httpx.AsyncClient(timeout=settings.service_timeout_seconds)

    outbox = OutboxService(
        session_factory,
        max_entries=settings.outbox_max_entries,
        delivery_timeout_seconds=settings.service_timeout_seconds,
        inline_timeout_seconds=settings.outbox_inline_timeout_seconds,
    )
    engine = ReconciliationEngine(
        store,
        gateway,
        catalog,
        notifier,
        outbox,
        success_url=f"{settings.frontend_url}/billing?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.frontend_url}/pricing",
        refund_window_days=settings.refund_window_days,
        clock=clock,
    )

    notifications = NotificationClient(http, settings.notification_service_url, settings.service_api_key)
    metrics = MetricsClient(http, settings.metrics_service_url, settings.service_api_key)
    outbox.register(USAGE_EVENT, metrics.record_usage_event)
    outbox.register(
        NOTIFICATION,
        lambda payload: notifications.send_email(payload["type"], payload["email"], payload["data"]),
    )
    outbox.register(ENTITLEMENT_SYNC, lambda payload: engine.sync_entitlement(payload["user_id"]))
    outbox.register(PROVIDER_CANCEL, engine.retry_provider_cancel)

    ingress = WebhookIngress(
        engine,
        session_factory,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    return BillingContext(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        catalog=catalog,
        gateway=gateway,
        store=store,
        notifier=notifier,
        outbox=outbox,
        engine=engine,
        ingress=ingress,
        http=http,
    )
