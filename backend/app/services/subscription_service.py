"""Subscription record store: keyed reads and guarded upserts per user."""

import enum
import logging
from collections.abc import Collection, Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.errors import PersistenceError
from app.models.subscription import PaymentMethod, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

_NULLISH_DATES = {"", "null", "none", "undefined", "invalid date"}

# Columns a caller may write through ``upsert_by_user_id``
_WRITABLE = frozenset(
    c.key for c in Subscription.__table__.columns if c.key not in {"id", "user_id", "created_at", "updated_at"}
)


def _coerce_datetime(value: Any) -> datetime | None:
    """Parse a date-ish value into a naive UTC datetime, or None if unusable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.lower() in _NULLISH_DATES:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def sanitize_changes(
    user_id: str, changes: Mapping[str, Any], current_start: datetime | None = None
) -> dict[str, Any]:
    """Normalise a partial update before it reaches the database.

    Enum members are stored by value. ``end_date`` is stripped (never stored)
    when it is None, a null-ish string, unparsable, or earlier than the start
    date of the same write (or, failing that, the stored start date).
    """
    clean: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in _WRITABLE:
            raise ValueError(f"Unknown subscription field: {key}")
        if isinstance(value, enum.Enum):
            value = value.value
        clean[key] = value

    if "start_date" in clean and clean["start_date"] is not None:
        clean["start_date"] = _coerce_datetime(clean["start_date"])

    if "end_date" in clean:
        raw = clean.pop("end_date")
        end_date = _coerce_datetime(raw)
        start = clean.get("start_date") or current_start
        if end_date is None:
            logger.warning("Stripping invalid end_date %r for user %s", raw, user_id)
        elif start is not None and end_date < start:
            logger.warning(
                "Stripping end_date %s earlier than start_date %s for user %s",
                end_date,
                start,
                user_id,
            )
        else:
            clean["end_date"] = end_date
    return clean


def _insert_for(session: AsyncSession):
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class SubscriptionStore:
    """Persistence for ``Subscription`` rows.

    Every method opens its own session so concurrent commands and webhooks
    never share one. The upsert is the only synchronisation point per user.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _get_one(self, *criteria) -> Subscription | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Subscription)
                    .where(*criteria)
                    .execution_options(populate_existing=True)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Subscription lookup failed: %s", e)
            raise PersistenceError("Subscription store is unavailable.") from e

    async def get_by_user_id(self, user_id: str) -> Subscription | None:
        return await self._get_one(Subscription.user_id == user_id)

    async def get_by_provider_customer_id(self, customer_id: str) -> Subscription | None:
        """Look up by Stripe customer ID (used by webhooks)."""
        return await self._get_one(Subscription.provider_customer_id == customer_id)

    async def get_by_provider_subscription_id(
        self, subscription_id: str
    ) -> Subscription | None:
        """Look up by Stripe subscription ID (used by webhooks)."""
        return await self._get_one(Subscription.provider_subscription_id == subscription_id)

    async def list_lapsed(self, now: datetime) -> list[Subscription]:
        """Entitled records whose end date has passed and that nothing will renew.

        Provider-billed active/trialing records are renewed by Stripe events,
        so they are left to ``customer.subscription.updated``/``deleted``.
        """
        renewing = and_(
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value]
            ),
            Subscription.payment_method == PaymentMethod.PROVIDER.value,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Subscription).where(
                        Subscription.is_active.is_(True),
                        Subscription.end_date.is_not(None),
                        Subscription.end_date <= now,
                        ~renewing,
                    )
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Lapsed subscription query failed: %s", e)
            raise PersistenceError("Subscription store is unavailable.") from e

    async def upsert_by_user_id(
        self,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        defaults: Mapping[str, Any] | None = None,
        status_changed_before: datetime | None = None,
        expected_statuses: Collection[str] | None = None,
    ) -> Subscription | None:
        """Create or field-merge the record for ``user_id`` in one statement.

        Args:
            changes: Fields to write on insert and on update. Unlisted fields
                keep their stored value.
            defaults: Extra fields used only when the row is created.
            status_changed_before: Compare-and-swap guard; the update applies
                only if the stored ``status_changed_at`` is unset or not later
                than this instant.
            expected_statuses: Compare-and-swap guard on the stored status.

        Returns:
            The stored record, or None when a guard rejected the update.

        Raises:
            PersistenceError: The store rejected the write or is unreachable.
        """
        try:
            async with self._session_factory() as session:
                current_start = None
                if "end_date" in changes and "start_date" not in changes:
                    current_start = await session.scalar(
                        select(Subscription.start_date).where(Subscription.user_id == user_id)
                    )
                clean = sanitize_changes(user_id, changes, current_start)
                insert_values = {
                    **sanitize_changes(user_id, defaults or {}),
                    **clean,
                    "user_id": user_id,
                }

                guards = []
                if status_changed_before is not None:
                    guards.append(
                        or_(
                            Subscription.status_changed_at.is_(None),
                            Subscription.status_changed_at <= status_changed_before,
                        )
                    )
                if expected_statuses is not None:
                    guards.append(Subscription.status.in_(list(expected_statuses)))

                insert = _insert_for(session)
                stmt = insert(Subscription).values(**insert_values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Subscription.user_id],
                    set_={**clean, "updated_at": func.now()},
                    where=and_(*guards) if guards else None,
                ).returning(Subscription.id)

                result = await session.execute(stmt)
                row = result.first()
                await session.commit()
                if row is None:
                    logger.info(
                        "Upsert for user %s skipped by guard (fields=%s)", user_id, sorted(clean)
                    )
                    return None

                record = await session.execute(
                    select(Subscription)
                    .where(Subscription.user_id == user_id)
                    .execution_options(populate_existing=True)
                )
                subscription = record.scalar_one()
        except IntegrityError as e:
            logger.error("Upsert for user %s violates a uniqueness constraint: %s", user_id, e)
            raise PersistenceError(
                "Subscription record conflicts with another user's provider identifiers."
            ) from e
        except SQLAlchemyError as e:
            logger.error("Upsert for user %s failed: %s", user_id, e)
            raise PersistenceError("Subscription store is unavailable.") from e

        logger.info("Upserted subscription for user %s: %s", user_id, sorted(clean))
        return subscription
