"""
Chain verification with detailed tamper detection.

The ChainVerifier walks the persisted chain in sequence order and
recomputes every hash from the stored fields, using the key version
recorded on each entry. Per entry, in order:

  1. the sequence id must follow the previous one with no gap,
  2. the entry's key version must resolve to a secret,
  3. the recomputed hash must equal the stored hash,
  4. the stored previous_hash must equal the previous entry's hash.

A failed check is a ChainBreak inside the report, never an exception.
Only infrastructure problems raise: the store cannot be read
(PersistenceError) or a key version is gone (MissingKeyVersionError),
which is an operational problem and must not be mistaken for tampering.

Entries are streamed in keyset-paginated batches, so memory stays bounded
by one batch however long the chain grows. The scan is a snapshot: it
stops at the tail observed when the run started, and appends made during
the run are left for the next one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.config.settings import VerifyMode
from auditchain.core.errors import MissingKeyVersionError
from auditchain.core.metrics import CHAIN_BREAKS
from auditchain.db.base import utcnow
from auditchain.db.models.chain import GENESIS_PREVIOUS_HASH, ChainEntry
from auditchain.db.models.verification import RunMode, RunStatus
from auditchain.services.chain.hasher import compute_hash, hashes_equal
from auditchain.services.chain.secrets import SecretStore
from auditchain.services.chain.store import SqlChainStore

_log = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000


class BreakReason(StrEnum):
    HASH_MISMATCH = "hash_mismatch"
    PREVIOUS_HASH_MISMATCH = "previous_hash_mismatch"
    SEQUENCE_GAP = "sequence_gap"
    CURSOR_MISMATCH = "cursor_mismatch"


@dataclass(frozen=True, slots=True)
class ChainPosition:
    """A point in the chain: the last trusted sequence id and its hash."""

    sequence_id: int
    hash: str


GENESIS = ChainPosition(sequence_id=0, hash=GENESIS_PREVIOUS_HASH)


@dataclass(frozen=True, slots=True)
class ChainBreak:
    """Tamper evidence at one entry."""

    sequence_id: int
    reason: BreakReason
    expected: str
    actual: str
    expected_sequence_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sequence_id": self.sequence_id,
            "reason": self.reason.value,
            "expected": self.expected,
            "actual": self.actual,
        }
        if self.expected_sequence_id is not None:
            data["expected_sequence_id"] = self.expected_sequence_id
        return data


@dataclass(slots=True)
class VerificationProgress:
    """Live progress of one run; stays readable if the run is cancelled or fails."""

    started_at: datetime = field(default_factory=utcnow)
    total_entries: int = 0
    verified_entries: int = 0
    examined_entries: int = 0
    last_sequence_id: int = 0
    last_hash: str = GENESIS_PREVIOUS_HASH

    @property
    def position(self) -> ChainPosition:
        return ChainPosition(self.last_sequence_id, self.last_hash)


@dataclass(slots=True)
class VerificationReport:
    """Point-in-time outcome of one verification pass."""

    status: RunStatus
    complete: bool
    scope: RunMode
    break_policy: VerifyMode
    total_entries: int
    verified_entries: int
    started_at: datetime
    finished_at: datetime
    last_verified_sequence_id: int
    last_verified_hash: str
    start_sequence_id: int = 0
    breaks: list[ChainBreak] = field(default_factory=list)
    error: str | None = None
    error_detail: dict[str, Any] = field(default_factory=dict)

    @property
    def intact(self) -> bool:
        return self.status == RunStatus.INTACT

    @property
    def first_break(self) -> ChainBreak | None:
        return self.breaks[0] if self.breaks else None

    @property
    def broken_at_sequence_id(self) -> int | None:
        first = self.first_break
        return first.sequence_id if first else None

    @property
    def expected_hash(self) -> str | None:
        first = self.first_break
        return first.expected if first else None

    @property
    def actual_hash(self) -> str | None:
        first = self.first_break
        return first.actual if first else None

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form shared by the API, the CLI and run records."""
        return {
            "status": self.status.value,
            "intact": self.intact,
            "complete": self.complete,
            "scope": self.scope.value,
            "break_policy": self.break_policy.value,
            "total_entries": self.total_entries,
            "verified_entries": self.verified_entries,
            "broken_at_sequence_id": self.broken_at_sequence_id,
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
            "breaks": [b.to_dict() for b in self.breaks],
            "start_sequence_id": self.start_sequence_id,
            "last_verified_sequence_id": self.last_verified_sequence_id,
            "last_verified_hash": self.last_verified_hash,
            "error": self.error,
            "error_detail": self.error_detail,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


class ChainVerifier:
    """
    Recomputes and checks every link of the audit chain.

    Read-only: it never writes to the chain. Any number of verifiers may
    run concurrently with each other and with appends. ``progress`` tracks
    the most recent call only; concurrent callers pass their own.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: SecretStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._session_factory = session_factory
        self._secret_store = secret_store
        self._batch_size = batch_size
        self.progress = VerificationProgress()

    async def verify(
        self,
        mode: VerifyMode = VerifyMode.FIRST_BREAK,
        start: ChainPosition | None = None,
        max_entries: int | None = None,
        cancel: asyncio.Event | None = None,
        progress: VerificationProgress | None = None,
    ) -> VerificationReport:
        """
        Verify the chain from ``start`` (genesis by default) to the current tail.

        Args:
            mode: FIRST_BREAK stops at the first break; ALL_BREAKS records
                every break, resynchronising on the stored hash after each.
            start: Trusted position to resume from (incremental runs).
            max_entries: Stop after examining this many entries.
            cancel: Stop cleanly at the next entry once this event is set.
            progress: Caller-owned progress for this run. It is reset to
                ``start`` and updated in place, so it still describes this
                run if verification raises part-way.

        Returns:
            A VerificationReport. ``complete`` is False when the run stopped
            early because of ``max_entries`` or ``cancel``.

        Raises:
            MissingKeyVersionError: An entry's key version cannot be resolved.
            PersistenceError: The store cannot be read.
        """
        origin = start or GENESIS
        if progress is None:
            progress = VerificationProgress()
        progress.started_at = utcnow()
        progress.total_entries = 0
        progress.verified_entries = 0
        progress.examined_entries = 0
        progress.last_sequence_id = origin.sequence_id
        progress.last_hash = origin.hash
        self.progress = progress

        async with self._session_factory() as db:
            store = SqlChainStore(db)
            upto = await store.max_sequence_id()
            total = await store.count(after=origin.sequence_id, upto=upto)
        progress.total_entries = total

        _log.info(
            "chain_verification_started",
            start_sequence_id=origin.sequence_id,
            upto_sequence_id=upto,
            total_entries=total,
            break_policy=mode.value,
        )

        breaks: list[ChainBreak] = []
        secrets: dict[int, str] = {}
        expected_prev = origin.hash
        expected_seq = origin.sequence_id + 1
        after = origin.sequence_id
        complete = True
        stop = False

        while not stop and after < upto:
            async with self._session_factory() as db:
                batch = await SqlChainStore(db).fetch_batch(after, upto, self._batch_size)
            if not batch:
                break

            for entry in batch:
                if (cancel is not None and cancel.is_set()) or (
                    max_entries is not None and progress.examined_entries >= max_entries
                ):
                    complete = False
                    stop = True
                    break

                after = entry.sequence_id
                progress.examined_entries += 1
                found = await self._check_entry(entry, expected_seq, expected_prev, secrets)

                if found is None:
                    progress.verified_entries += 1
                    progress.last_sequence_id = entry.sequence_id
                    progress.last_hash = entry.hash
                else:
                    breaks.append(found)
                    CHAIN_BREAKS.labels(reason=found.reason.value).inc()
                    _log.error(
                        "chain_break_detected",
                        sequence_id=found.sequence_id,
                        reason=found.reason.value,
                        expected=found.expected,
                        actual=found.actual,
                    )
                    if mode == VerifyMode.FIRST_BREAK:
                        stop = True
                        break

                expected_prev = entry.hash
                expected_seq = entry.sequence_id + 1

        report = VerificationReport(
            status=RunStatus.BROKEN if breaks else RunStatus.INTACT,
            complete=complete,
            scope=RunMode.FULL if origin == GENESIS else RunMode.INCREMENTAL,
            break_policy=mode,
            total_entries=total,
            verified_entries=progress.verified_entries,
            started_at=progress.started_at,
            finished_at=utcnow(),
            last_verified_sequence_id=progress.last_sequence_id,
            last_verified_hash=progress.last_hash,
            start_sequence_id=origin.sequence_id,
            breaks=breaks,
        )
        _log.info(
            "chain_verification_finished",
            status=report.status.value,
            complete=report.complete,
            total_entries=report.total_entries,
            verified_entries=report.verified_entries,
            broken_at_sequence_id=report.broken_at_sequence_id,
        )
        return report

    async def _secret_for(self, entry: ChainEntry, cache: dict[int, str]) -> str:
        secret = cache.get(entry.key_version)
        if secret is None:
            secret = await self._secret_store.get(entry.key_version)
            if secret is None:
                _log.warning(
                    "chain_verification_key_missing",
                    key_version=entry.key_version,
                    sequence_id=entry.sequence_id,
                )
                raise MissingKeyVersionError(entry.key_version, entry.sequence_id)
            cache[entry.key_version] = secret
        return secret

    async def _check_entry(
        self,
        entry: ChainEntry,
        expected_seq: int,
        expected_prev: str,
        secrets: dict[int, str],
    ) -> ChainBreak | None:
        if entry.sequence_id != expected_seq:
            return ChainBreak(
                sequence_id=entry.sequence_id,
                reason=BreakReason.SEQUENCE_GAP,
                expected=expected_prev,
                actual=entry.previous_hash,
                expected_sequence_id=expected_seq,
            )

        secret = await self._secret_for(entry, secrets)
        candidate = compute_hash(
            expected_prev,
            entry.actor_id,
            entry.action,
            entry.resource_type,
            entry.resource_id,
            entry.details,
            entry.timestamp,
            secret,
        )
        if not hashes_equal(candidate, entry.hash):
            return ChainBreak(
                sequence_id=entry.sequence_id,
                reason=BreakReason.HASH_MISMATCH,
                expected=candidate,
                actual=entry.hash,
            )

        if entry.previous_hash != expected_prev:
            return ChainBreak(
                sequence_id=entry.sequence_id,
                reason=BreakReason.PREVIOUS_HASH_MISMATCH,
                expected=expected_prev,
                actual=entry.previous_hash,
            )
        return None
