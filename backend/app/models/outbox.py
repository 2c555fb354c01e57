"""Outbox entry: a best-effort side effect waiting for redelivery."""

from typing import Any

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class OutboxEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Queued side effect (usage metric, notification, entitlement sync)."""

    __tablename__ = "outbox_entries"

    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<OutboxEntry(id={self.id}, kind={self.kind}, attempts={self.attempts})>"
