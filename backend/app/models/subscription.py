"""Subscription model: local billing state per user, mirrored from Stripe."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Plan(str, enum.Enum):
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    PREMIUM = "premium"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    SUSPENDED = "suspended"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"


class CancelationType(str, enum.Enum):
    NONE = "none"
    END_OF_PERIOD = "end_of_period"
    IMMEDIATE = "immediate"


class PaymentMethod(str, enum.Enum):
    PROVIDER = "provider"
    MANUAL = "manual"


class PaymentStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class RefundStatus(str, enum.Enum):
    NONE = "none"
    PROCESSED = "processed"
    MANUAL_PENDING = "manual_pending"


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per user. Cancellation is a status; rows are never deleted."""

    __tablename__ = "subscriptions"

    # Owning principal: UNIQUE enforces upsert-by-user semantics
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan & lifecycle
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default=Plan.FREE.value)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.INCOMPLETE.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelation_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    # Instant of the last applied status transition (local command or provider event)
    status_changed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Stripe identifiers
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    provider_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentMethod.PROVIDER.value
    )

    # Payment audit trail (last write wins)
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_failure_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Refunds
    refund_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.NONE.value
    )
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minor units
    refund_date: Mapped[datetime | None] = mapped_column(nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id}, plan={self.plan}, "
            f"status={self.status}, is_active={self.is_active})>"
        )
