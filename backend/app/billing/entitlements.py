"""Entitlement notifier: flips the user's access role."""

import logging
from typing import Protocol

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.errors import PersistenceError
from app.models.user import Role, User

logger = logging.getLogger(__name__)


class EntitlementNotifier(Protocol):
    async def set_role(self, user_id: str, role: Role) -> None: ...


def desired_role(is_active: bool) -> Role:
    """The only rule for entitlement: entitled records get premium."""
    return Role.PREMIUM if is_active else Role.USER


class UserRoleNotifier:
    """Writes ``users.role``, creating the row on first use."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def set_role(self, user_id: str, role: Role) -> None:
        try:
            async with self._session_factory() as session:
                insert = (
                    postgresql.insert
                    if session.bind.dialect.name == "postgresql"
                    else sqlite.insert
                )
                stmt = insert(User).values(id=user_id, role=role.value)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[User.id],
                    set_={"role": role.value},
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to set role %s for user %s: %s", role.value, user_id, e)
            raise PersistenceError(f"Could not update role for user {user_id}.") from e
        logger.info("Set role %s for user %s", role.value, user_id)

    async def get_role(self, user_id: str) -> Role | None:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            return Role(user.role) if user else None
