"""User role record: the entitlement the billing engine flips."""

import enum

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin


class Role(str, enum.Enum):
    USER = "user"
    PREMIUM = "premium"


class User(TimestampMixin, Base):
    """Access role per user. Accounts themselves live in the auth service."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.USER.value, nullable=False)

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role!r}>"
