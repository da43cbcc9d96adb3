"""Read-side queries over the chain: recent entries and compliance export."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.core.errors import ValidationError
from auditchain.db.base import utcnow
from auditchain.db.models.chain import ChainEntry
from auditchain.services.chain.hasher import canonical_timestamp
from auditchain.services.chain.store import SqlChainStore

_log = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise a filter bound to UTC; naive values are taken as UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _check_window(since: datetime | None, until: datetime | None) -> None:
    if since is not None and until is not None and since > until:
        raise ValidationError(
            "'from' must not be later than 'to'",
            detail={"from": since.isoformat(), "to": until.isoformat()},
        )


def entry_to_dict(entry: ChainEntry) -> dict[str, Any]:
    return {
        "sequence_id": entry.sequence_id,
        "previous_hash": entry.previous_hash,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "details": entry.details or {},
        "timestamp": canonical_timestamp(entry.timestamp),
        "key_version": entry.key_version,
        "hash": entry.hash,
    }


class ChainQueryService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        export_max_entries: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._export_max = export_max_entries

    async def list_recent(
        self,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[ChainEntry]:
        """Entries newest first, optionally filtered by action and time window."""
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_LIST_LIMIT}", detail={"limit": limit}
            )
        since, until = as_utc(since), as_utc(until)
        _check_window(since, until)
        async with self._session_factory() as db:
            return await SqlChainStore(db).recent(
                limit=limit, action=action, since=since, until=until
            )

    async def export(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        action: str | None = None,
    ) -> dict[str, Any]:
        """
        Build a compliance export: every matching entry, oldest first.

        The result carries the filters applied and an export timestamp so an
        auditor can tell exactly which slice of the chain was handed over.

        Raises:
            ValidationError: The window is inverted, or more entries match
                than one export may hold. Exports are never truncated.
        """
        since, until = as_utc(since), as_utc(until)
        _check_window(since, until)
        async with self._session_factory() as db:
            store = SqlChainStore(db)
            matching = await store.count_matching(action=action, since=since, until=until)
            if self._export_max is not None and matching > self._export_max:
                _log.warning(
                    "chain_export_too_large",
                    matching_entries=matching,
                    max_entries=self._export_max,
                )
                raise ValidationError(
                    f"{matching} entries match; narrow the window to at most "
                    f"{self._export_max} entries per export",
                    detail={"matching_entries": matching, "max_entries": self._export_max},
                )
            entries = await store.between(since=since, until=until, action=action)

        _log.info(
            "chain_exported",
            total_entries=len(entries),
            action=action,
            since=since.isoformat() if since else None,
            until=until.isoformat() if until else None,
        )
        return {
            "exported_at": canonical_timestamp(utcnow()),
            "total_entries": len(entries),
            "filters": {
                "from": since.isoformat() if since else None,
                "to": until.isoformat() if until else None,
                "action": action,
            },
            "entries": [entry_to_dict(e) for e in entries],
        }
