"""Outbox: durable best-effort delivery of side effects.

Usage metrics, emails and entitlement syncs must never abort the state
transition that produced them. ``dispatch`` tries once inline under a short
timeout and queues the entry on failure, so a stalled service cannot hold up
a request or a webhook acknowledgement. ``sweep`` (scheduled) re-attempts
everything queued with the full service timeout.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import utcnow
from app.models.outbox import OutboxEntry

logger = logging.getLogger(__name__)

Deliverer = Callable[[dict[str, Any]], Awaitable[Any]]

USAGE_EVENT = "usage_event"
NOTIFICATION = "notification"
ENTITLEMENT_SYNC = "entitlement_sync"
PROVIDER_CANCEL = "provider_cancel"


@dataclass
class SweepReport:
    delivered: int = 0
    failed: int = 0
    dropped: int = 0


class OutboxService:
    """Bounded queue of side effects keyed by delivery kind.

    Only the append path takes a lock. The sweep works on a snapshot of the
    queue and touches each entry by id, so it never blocks request handling.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_entries: int = 100,
        delivery_timeout_seconds: float = 10.0,
        inline_timeout_seconds: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._max_entries = max_entries
        self._timeout = delivery_timeout_seconds
        self._inline_timeout = min(inline_timeout_seconds, delivery_timeout_seconds)
        self._deliverers: dict[str, Deliverer] = {}
        self._append_lock = asyncio.Lock()

    def register(self, kind: str, deliverer: Deliverer) -> None:
        self._deliverers[kind] = deliverer

    async def _deliver(self, kind: str, payload: dict[str, Any], timeout: float) -> None:
        deliverer = self._deliverers.get(kind)
        if deliverer is None:
            raise LookupError(f"No deliverer registered for outbox kind {kind!r}")
        await asyncio.wait_for(deliverer(payload), timeout=timeout)

    async def enqueue(
        self, kind: str, payload: dict[str, Any], failure_reason: str | None = None
    ) -> OutboxEntry:
        """Append an entry and trim the queue to the newest ``max_entries``."""
        async with self._append_lock:
            async with self._session_factory() as session:
                entry = OutboxEntry(
                    kind=kind,
                    payload=payload,
                    failure_reason=failure_reason,
                    attempts=1,
                    created_at=utcnow(),
                )
                session.add(entry)
                await session.flush()

                overflow = (
                    select(OutboxEntry.id)
                    .order_by(OutboxEntry.created_at.desc())
                    .offset(self._max_entries)
                )
                stale_ids = list((await session.execute(overflow)).scalars().all())
                if stale_ids:
                    await session.execute(delete(OutboxEntry).where(OutboxEntry.id.in_(stale_ids)))
                    logger.warning("Outbox full, dropped %d oldest entries", len(stale_ids))
                await session.commit()
        logger.info("Queued %s outbox entry %s: %s", kind, entry.id, failure_reason)
        return entry

    async def dispatch(self, kind: str, payload: dict[str, Any]) -> bool:
        """Deliver now, or queue for the next sweep. Never raises.

        Returns:
            True if delivered inline, False if queued (or lost, which is logged).
        """
        try:
            await self._deliver(kind, payload, self._inline_timeout)
            return True
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning("Inline %s delivery failed, queueing: %s", kind, reason)
            try:
                await self.enqueue(kind, payload, failure_reason=reason)
            except Exception:
                logger.exception("Could not queue %s outbox entry, payload=%s", kind, payload)
            return False

    async def pending(self) -> list[OutboxEntry]:
        async with self._session_factory() as session:
            result = await session.execute(select(OutboxEntry).order_by(OutboxEntry.created_at))
            return list(result.scalars().all())

    async def sweep(self) -> SweepReport:
        """Re-attempt every queued entry. One failure never blocks the others."""
        report = SweepReport()
        entries = await self.pending()
        if not entries:
            logger.info("Outbox sweep: nothing to retry")
            return report

        logger.info("Outbox sweep: retrying %d entries", len(entries))
        for entry in entries:
            try:
                if entry.kind not in self._deliverers:
                    logger.warning("Dropping outbox entry %s with unknown kind %s", entry.id, entry.kind)
                    await self._remove(entry)
                    report.dropped += 1
                    continue
                try:
                    await self._deliver(entry.kind, entry.payload, self._timeout)
                except Exception as e:
                    reason = str(e) or type(e).__name__
                    logger.warning("Retry of outbox entry %s (%s) failed: %s", entry.id, entry.kind, reason)
                    await self._record_failure(entry, reason)
                    report.failed += 1
                    continue
                await self._remove(entry)
                report.delivered += 1
            except SQLAlchemyError as e:
                # Entry stays queued and is retried by the next sweep
                logger.error("Outbox sweep could not update entry %s (%s): %s", entry.id, entry.kind, e)
                report.failed += 1

        logger.info(
            "Outbox sweep done: delivered=%d failed=%d dropped=%d",
            report.delivered,
            report.failed,
            report.dropped,
        )
        return report

    async def _remove(self, entry: OutboxEntry) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(OutboxEntry).where(OutboxEntry.id == entry.id))
            await session.commit()

    async def _record_failure(self, entry: OutboxEntry, reason: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(OutboxEntry)
                .where(OutboxEntry.id == entry.id)
                .values(failure_reason=reason, attempts=OutboxEntry.attempts + 1)
            )
            await session.commit()
