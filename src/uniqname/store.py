"""Authoritative username store.

The relational database is the only source of truth for whether a username
is taken. The cache consults it through this narrow interface. Driver and
transport failures (connection refused, resets) surface as StoreError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from uniqname.db.models import User
from uniqname.exceptions import StoreError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class AuthoritativeStore(Protocol):
    """Read-only view of existing usernames."""

    async def exists_case_insensitive(self, name: str) -> bool: ...

    async def count_all(self) -> int: ...

    async def list_page(self, offset: int, limit: int) -> list[str]: ...


class SqlAlchemyUsernameStore:
    """AuthoritativeStore over the ``users`` table.

    Each call opens its own short-lived session so the store can be shared
    across concurrent requests.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists_case_insensitive(self, name: str) -> bool:
        query = select(User.id).where(func.lower(User.username) == name.lower()).limit(1)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return result.scalar_one_or_none() is not None
        except (SQLAlchemyError, OSError) as e:
            msg = f"Username existence check failed: {e}"
            raise StoreError(msg) from e

    async def count_all(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(func.count()).select_from(User))
                return int(result.scalar() or 0)
        except (SQLAlchemyError, OSError) as e:
            msg = f"Username count failed: {e}"
            raise StoreError(msg) from e

    async def list_page(self, offset: int, limit: int) -> list[str]:
        """Return up to ``limit`` usernames ordered by primary key."""
        query = select(User.username).order_by(User.id).offset(offset).limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            msg = f"Username page fetch failed at offset {offset}: {e}"
            raise StoreError(msg) from e
