"""
Append-only persistence for chain entries.

ImmutableAppendOnlyStore is the capability the append engine and the
verifier depend on: insert, read the tail, and read in sequence order.
There is intentionally no update or delete. SqlChainStore implements it on
one SQLAlchemy session; immutability at rest comes from the database
triggers installed by the initial migration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auditchain.core.errors import ErrorCode, PersistenceError
from auditchain.db.models.chain import ChainEntry


class ImmutableAppendOnlyStore(ABC):
    """Ordered, insert-only collection of chain entries keyed by sequence id."""

    @abstractmethod
    async def tail(self, for_update: bool = False) -> ChainEntry | None:
        """Return the entry with the highest sequence id, optionally row-locked."""

    @abstractmethod
    async def insert(self, entry: ChainEntry) -> None:
        """Stage a new entry inside the current transaction."""

    @abstractmethod
    async def get(self, sequence_id: int) -> ChainEntry | None: ...

    @abstractmethod
    async def get_by_idempotency_key(self, key: str) -> ChainEntry | None: ...

    @abstractmethod
    async def max_sequence_id(self) -> int:
        """Highest sequence id, 0 for an empty chain."""

    @abstractmethod
    async def count(self, after: int = 0, upto: int | None = None) -> int:
        """Number of entries with ``after < sequence_id <= upto``."""

    @abstractmethod
    async def fetch_batch(self, after: int, upto: int, limit: int) -> list[ChainEntry]:
        """Entries with ``after < sequence_id <= upto`` in ascending order, at most ``limit``."""

    @abstractmethod
    async def recent(
        self,
        limit: int,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ChainEntry]:
        """Newest first by timestamp."""

    @abstractmethod
    async def count_matching(
        self,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int: ...

    @abstractmethod
    async def between(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        action: str | None = None,
    ) -> list[ChainEntry]:
        """Oldest first by timestamp; used for compliance export."""


@asynccontextmanager
async def _reading(what: str) -> AsyncIterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise PersistenceError(
            f"Could not read {what}", code=ErrorCode.STORE_READ_FAILED
        ) from exc


def _filtered(
    query: Select,
    action: str | None,
    since: datetime | None,
    until: datetime | None,
) -> Select:
    if action:
        query = query.where(ChainEntry.action == action)
    if since is not None:
        query = query.where(ChainEntry.timestamp >= since)
    if until is not None:
        query = query.where(ChainEntry.timestamp <= until)
    return query


class SqlChainStore(ImmutableAppendOnlyStore):
    """ImmutableAppendOnlyStore over an AsyncSession. The caller owns the transaction."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def tail(self, for_update: bool = False) -> ChainEntry | None:
        query = select(ChainEntry).order_by(ChainEntry.sequence_id.desc()).limit(1)
        if for_update:
            # Ignored by SQLite, which serialises writers on its own.
            query = query.with_for_update()
        async with _reading("chain tail"):
            result = await self._db.execute(query)
            return result.scalar_one_or_none()

    async def insert(self, entry: ChainEntry) -> None:
        self._db.add(entry)
        await self._db.flush()

    async def get(self, sequence_id: int) -> ChainEntry | None:
        async with _reading("chain entry"):
            return await self._db.get(ChainEntry, sequence_id)

    async def get_by_idempotency_key(self, key: str) -> ChainEntry | None:
        async with _reading("chain entry"):
            result = await self._db.execute(
                select(ChainEntry).where(ChainEntry.idempotency_key == key)
            )
            return result.scalar_one_or_none()

    async def max_sequence_id(self) -> int:
        async with _reading("chain tail"):
            result = await self._db.execute(select(func.max(ChainEntry.sequence_id)))
            return result.scalar_one_or_none() or 0

    async def count(self, after: int = 0, upto: int | None = None) -> int:
        query = select(func.count()).select_from(ChainEntry).where(
            ChainEntry.sequence_id > after
        )
        if upto is not None:
            query = query.where(ChainEntry.sequence_id <= upto)
        async with _reading("chain size"):
            result = await self._db.execute(query)
            return result.scalar_one()

    async def fetch_batch(self, after: int, upto: int, limit: int) -> list[ChainEntry]:
        async with _reading("chain entries"):
            result = await self._db.execute(
                select(ChainEntry)
                .where(ChainEntry.sequence_id > after, ChainEntry.sequence_id <= upto)
                .order_by(ChainEntry.sequence_id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def recent(
        self,
        limit: int,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ChainEntry]:
        query = _filtered(select(ChainEntry), action, since, until)
        async with _reading("chain entries"):
            result = await self._db.execute(
                query.order_by(ChainEntry.timestamp.desc(), ChainEntry.sequence_id.desc()).limit(
                    limit
                )
            )
            return list(result.scalars().all())

    async def count_matching(
        self,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        query = _filtered(select(func.count()).select_from(ChainEntry), action, since, until)
        async with _reading("chain size"):
            result = await self._db.execute(query)
            return result.scalar_one()

    async def between(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        action: str | None = None,
    ) -> list[ChainEntry]:
        query = _filtered(select(ChainEntry), action, since, until).order_by(
            ChainEntry.timestamp.asc(), ChainEntry.sequence_id.asc()
        )
        async with _reading("chain entries"):
            result = await self._db.execute(query)
            return list(result.scalars().all())
