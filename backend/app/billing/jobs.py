"""Scheduled billing jobs (outbox sweep, lapsed-subscription expiry)."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.billing.context import BillingContext

logger = logging.getLogger(__name__)


async def run_outbox_sweep(context: BillingContext) -> None:
    try:
        await context.outbox.sweep()
    except Exception:
        logger.exception("Outbox sweep failed")


async def run_expire_lapsed(context: BillingContext) -> None:
    try:
        await context.engine.expire_lapsed()
    except Exception:
        logger.exception("Lapsed subscription expiry failed")


def build_scheduler(context: BillingContext) -> AsyncIOScheduler:
    """Scheduler with both jobs registered. The caller starts and stops it."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_outbox_sweep,
        IntervalTrigger(minutes=context.settings.outbox_sweep_interval_minutes),
        args=[context],
        id="outbox_sweep",
        name="Outbox Retry Sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        run_expire_lapsed,
        IntervalTrigger(minutes=context.settings.outbox_sweep_interval_minutes),
        args=[context],
        id="expire_lapsed",
        name="Lapsed Subscription Expiry",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
