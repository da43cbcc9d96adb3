"""
Append engine: the single write path into the audit chain.

An append reads the chain tail, derives the next sequence id and hash, and
inserts the new entry in one transaction. Two appends that both read the
same tail would fork the chain, so appends are serialised three ways:

  - an asyncio lock per engine (one engine is shared per process),
  - SELECT ... FOR UPDATE on the tail row where the dialect supports it,
  - the primary key on sequence_id and the unique previous_hash column,
    which turn any cross-process race into a failed insert, never a fork.

An append that fails leaves nothing behind: the hash is only ever stored
together with the row it covers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.core.errors import (
    AppError,
    ErrorCode,
    PersistenceError,
    ValidationError,
)
from auditchain.core.metrics import CHAIN_APPEND_FAILURES, CHAIN_APPENDS
from auditchain.db.base import utcnow
from auditchain.db.models.chain import GENESIS_PREVIOUS_HASH, ChainEntry
from auditchain.services.chain.hasher import canonical_details, compute_hash
from auditchain.services.chain.secrets import SecretStore
from auditchain.services.chain.store import SqlChainStore

_log = structlog.get_logger(__name__)

DEFAULT_APPEND_TIMEOUT_SECONDS = 5.0


def _require(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", detail={"field": field})
    return str(value)


class AppendEngine:
    """
    Writes new audit facts to the chain.

    Usage:
        engine = AppendEngine(session_factory, DatabaseSecretStore(session_factory))
        seq = await engine.append(
            actor_id=user_id,
            action="part2_consent_revoked",
            resource_type="client",
            resource_id=client_id,
            details={"consent_id": consent_id},
        )
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: SecretStore,
        timeout_seconds: float = DEFAULT_APPEND_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._secret_store = secret_store
        self._timeout = timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    async def append(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        details: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """
        Append one entry and return its sequence id.

        A repeated call with an ``idempotency_key`` that was already used
        returns the original sequence id without writing anything.

        Raises:
            ConfigurationError: No usable active key.
            PersistenceError: The store failed or the timeout elapsed.
            ValidationError: Missing fields or non-JSON details.
        """
        actor_id = _require(actor_id, "actor_id")
        action = _require(action, "action")
        resource_type = _require(resource_type, "resource_type")
        payload = dict(details or {})
        # Fail fast on unserialisable details before taking the lock.
        canonical_details(payload)

        try:
            async with asyncio.timeout(self._timeout):
                return await self._append_locked(
                    actor_id, action, resource_type, resource_id, payload, idempotency_key
                )
        except TimeoutError as exc:
            CHAIN_APPEND_FAILURES.labels(reason="timeout").inc()
            _log.error("chain_append_timeout", action=action, timeout_seconds=self._timeout)
            raise PersistenceError(
                "Audit append timed out; the event may not have been recorded",
                code=ErrorCode.CHAIN_APPEND_TIMEOUT,
                detail={"timeout_seconds": self._timeout},
            ) from exc
        except AppError as exc:
            CHAIN_APPEND_FAILURES.labels(reason=exc.code.value).inc()
            raise

    async def _append_locked(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str | None,
        details: dict[str, Any],
        idempotency_key: str | None,
    ) -> int:
        async with self._lock:
            key = await self._secret_store.active()

            async with self._session_factory() as db:
                store = SqlChainStore(db)
                try:
                    if idempotency_key:
                        existing = await store.get_by_idempotency_key(idempotency_key)
                        if existing is not None:
                            _log.info(
                                "chain_append_deduplicated",
                                sequence_id=existing.sequence_id,
                                action=action,
                            )
                            return existing.sequence_id

                    tail = await store.tail(for_update=True)
                    previous_hash = tail.hash if tail is not None else GENESIS_PREVIOUS_HASH
                    sequence_id = tail.sequence_id + 1 if tail is not None else 1
                    timestamp = self._clock()

                    entry_hash = compute_hash(
                        previous_hash,
                        actor_id,
                        action,
                        resource_type,
                        resource_id,
                        details,
                        timestamp,
                        key.secret,
                    )
                    await store.insert(
                        ChainEntry(
                            sequence_id=sequence_id,
                            previous_hash=previous_hash,
                            actor_id=actor_id,
                            action=action,
                            resource_type=resource_type,
                            resource_id=resource_id,
                            details=details,
                            timestamp=timestamp,
                            key_version=key.version,
                            hash=entry_hash,
                            idempotency_key=idempotency_key,
                        )
                    )
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    _log.error("chain_append_conflict", action=action)
                    raise PersistenceError(
                        "Concurrent append claimed the same chain position; retry",
                        detail={"action": action},
                    ) from exc
                except SQLAlchemyError as exc:
                    await db.rollback()
                    _log.error("chain_append_failed", action=action, error=str(exc))
                    raise PersistenceError("Audit entry could not be stored") from exc

        CHAIN_APPENDS.inc()
        _log.info(
            "chain_entry_appended",
            sequence_id=sequence_id,
            action=action,
            resource_type=resource_type,
            key_version=key.version,
        )
        return sequence_id
