"""Webhook ingress: verify, parse, deduplicate and dispatch Stripe events.

The ingress always acknowledges a verified event: processing failures are
logged with the raw payload, stored as ``failed`` in the event log and can
be replayed later with ``replay_failed``. Only a bad signature is rejected.
"""

import json
import logging
from typing import Any

import stripe
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.engine import OutcomeStatus, ReconciliationEngine, WebhookOutcome
from app.billing.errors import WebhookVerificationError
from app.billing.events import UnrecognizedEvent, parse_event
from app.database import utcnow
from app.models.webhook_event import WebhookEventRecord

logger = logging.getLogger(__name__)

PROCESSING = "processing"


class WebhookIngress:
    def __init__(
        self,
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        webhook_secret: str,
        tolerance_seconds: int = 300,
    ) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: Any, sig_header: str) -> dict[str, Any]:
        """Check the Stripe-Signature header against the raw body and decode it.

        Raises:
            WebhookVerificationError: Not raw bytes, bad signature or bad JSON.
        """
        if not isinstance(payload, (bytes, bytearray)):
            # A parsed or re-serialised body can never match the signature
            raise WebhookVerificationError("Webhook body must be the raw request bytes.")
        if not self._secret:
            raise WebhookVerificationError("Webhook secret is not configured.")
        try:
            text = bytes(payload).decode("utf-8")
            stripe.WebhookSignature.verify_header(text, sig_header, self._secret, self._tolerance)
        except UnicodeDecodeError as e:
            raise WebhookVerificationError("Webhook body is not valid UTF-8.") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e.user_message or e}") from e
        try:
            raw = json.loads(text)
        except ValueError as e:
            raise WebhookVerificationError("Invalid webhook payload.") from e
        if not isinstance(raw, dict):
            raise WebhookVerificationError("Invalid webhook payload.")
        return raw

    async def receive(self, payload: Any, sig_header: str) -> WebhookOutcome:
        """Verified entry point used by the public webhook route."""
        raw = self.verify(payload, sig_header)
        return await self.process(raw, bytes(payload).decode("utf-8"))

    async def process_unverified(self, raw: dict[str, Any]) -> WebhookOutcome:
        """Development-only entry point: no signature check."""
        return await self.process(raw, json.dumps(raw))

    async def process(self, raw: dict[str, Any], payload_text: str) -> WebhookOutcome:
        event_id = str(raw.get("id") or "")
        event_type = str(raw.get("type") or "")

        try:
            event = parse_event(raw)
        except ValidationError as e:
            logger.exception("Malformed %s event %s, payload=%s", event_type, event_id, payload_text)
            outcome = WebhookOutcome(OutcomeStatus.FAILED, event_id, event_type, f"malformed event: {e.error_count()} errors")
            await self._record_unclaimed(outcome, payload_text)
            return outcome

        if isinstance(event, UnrecognizedEvent):
            logger.debug("Unhandled webhook event type: %s", event.type)
            return WebhookOutcome(OutcomeStatus.IGNORED, event.id, event.type, "unrecognized event type")

        try:
            claimed = await self._claim(event.id, event.type, payload_text)
        except SQLAlchemyError:
            logger.exception("Event log unavailable for %s (%s), payload=%s", event.id, event.type, payload_text)
            return WebhookOutcome(OutcomeStatus.FAILED, event.id, event.type, "event log unavailable")
        if not claimed:
            logger.info("Duplicate webhook event %s (%s), skipping", event.id, event.type)
            return WebhookOutcome(OutcomeStatus.DUPLICATE, event.id, event.type, "already processed")

        logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)
        try:
            outcome = await self.engine.handle_event(event)
        except Exception as e:
            logger.exception("Error processing webhook event %s (%s), payload=%s", event.id, event.type, payload_text)
            outcome = WebhookOutcome(OutcomeStatus.FAILED, event.id, event.type, str(e) or type(e).__name__)

        await self._finish(outcome)
        logger.info("Webhook %s (%s): %s %s", event.id, event.type, outcome.status.value, outcome.reason or "")
        return outcome

    async def replay_failed(self, limit: int = 100) -> list[WebhookOutcome]:
        """Re-run stored events whose processing failed, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEventRecord)
                .where(WebhookEventRecord.status == OutcomeStatus.FAILED.value)
                .order_by(WebhookEventRecord.created_at)
                .limit(limit)
            )
            records = list(result.scalars().all())

        outcomes = []
        for record in records:
            try:
                raw = json.loads(record.payload)
            except ValueError:
                logger.error("Stored payload for event %s is not JSON, skipping replay", record.event_id)
                continue
            outcomes.append(await self.process(raw, record.payload))
        logger.info("Replayed %d failed webhook events", len(outcomes))
        return outcomes

    # --- Event log ---

    async def _claim(self, event_id: str, event_type: str, payload_text: str) -> bool:
        """Insert the log row, or reclaim it if a previous attempt failed.

        Returns False when the event was already handled (or is in flight).
        """
        async with self._session_factory() as session:
            insert = postgresql.insert if session.bind.dialect.name == "postgresql" else sqlite.insert
            stmt = insert(WebhookEventRecord).values(
                event_id=event_id,
                event_type=event_type,
                status=PROCESSING,
                payload=payload_text,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[WebhookEventRecord.event_id],
                set_={"status": PROCESSING, "error": None, "updated_at": func.now()},
                where=WebhookEventRecord.status == OutcomeStatus.FAILED.value,
            ).returning(WebhookEventRecord.id)
            row = (await session.execute(stmt)).first()
            await session.commit()
            return row is not None

    async def _finish(self, outcome: WebhookOutcome) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(WebhookEventRecord)
                    .where(WebhookEventRecord.event_id == outcome.event_id)
                    .values(
                        status=outcome.status.value,
                        error=outcome.reason if outcome.status == OutcomeStatus.FAILED else None,
                        processed_at=utcnow(),
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not record outcome %s for event %s", outcome.status.value, outcome.event_id)

    async def _record_unclaimed(self, outcome: WebhookOutcome, payload_text: str) -> None:
        """Log a malformed event as failed so it shows up for manual replay."""
        if not outcome.event_id:
            return
        try:
            async with self._session_factory() as session:
                insert = postgresql.insert if session.bind.dialect.name == "postgresql" else sqlite.insert
                stmt = insert(WebhookEventRecord).values(
                    event_id=outcome.event_id,
                    event_type=outcome.event_type,
                    status=outcome.status.value,
                    error=outcome.reason,
                    payload=payload_text,
                )
                await session.execute(stmt.on_conflict_do_nothing(index_elements=[WebhookEventRecord.event_id]))
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not record malformed event %s", outcome.event_id)
