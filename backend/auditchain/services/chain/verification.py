"""
Verification orchestration.

VerificationService is what the API, the CLI and schedulers call. It wraps
ChainVerifier with the operational concerns around a run:

  - incremental runs resume from the verification cursor, after checking
    that the entry under the cursor still carries the remembered hash,
  - a missing key version becomes an ``incomplete`` report instead of an
    error, so it is recorded and alerted on like any other outcome,
  - every run can be recorded, and the cursor follows intact runs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.config.settings import VerifyMode
from auditchain.core.errors import ErrorCode, MissingKeyVersionError, PersistenceError
from auditchain.core.metrics import CHAIN_BREAKS, VERIFICATION_RUNS
from auditchain.db.base import utcnow
from auditchain.db.models.verification import (
    RunMode,
    RunStatus,
    VerificationCursor,
    VerificationRun,
)
from auditchain.services.chain.recorder import RunSummary, VerificationRunRecorder
from auditchain.services.chain.secrets import SecretStore
from auditchain.services.chain.store import SqlChainStore
from auditchain.services.chain.verifier import (
    DEFAULT_BATCH_SIZE,
    BreakReason,
    ChainBreak,
    ChainPosition,
    ChainVerifier,
    VerificationProgress,
    VerificationReport,
)

_log = structlog.get_logger(__name__)

CURSOR_ID = 1


class AlertLevel(StrEnum):
    GREEN = "green"
    RED = "red"
    YELLOW = "yellow"


@dataclass(frozen=True, slots=True)
class ChainStatus:
    """Alert view of the most recent verification run."""

    level: AlertLevel
    message: str
    latest_run: VerificationRun | None


def alert_level(status: RunStatus | str | None) -> AlertLevel:
    if status == RunStatus.INTACT:
        return AlertLevel.GREEN
    if status == RunStatus.BROKEN:
        return AlertLevel.RED
    return AlertLevel.YELLOW


class VerificationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: SecretStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        default_mode: VerifyMode = VerifyMode.FIRST_BREAK,
    ) -> None:
        self._session_factory = session_factory
        self._default_mode = default_mode
        self.verifier = ChainVerifier(session_factory, secret_store, batch_size=batch_size)
        self.recorder = VerificationRunRecorder(session_factory)

    async def run(
        self,
        mode: VerifyMode | None = None,
        incremental: bool = False,
        max_entries: int | None = None,
        cancel: asyncio.Event | None = None,
        record: bool = True,
        source: str = "api",
    ) -> VerificationReport:
        """
        Run one verification pass and return its report.

        Tampering and missing keys are outcomes in the report. Only a store
        failure raises (PersistenceError), including a failure to record.
        """
        mode = mode or self._default_mode
        start: ChainPosition | None = None

        report: VerificationReport | None = None
        if incremental:
            cursor = await self.load_cursor()
            if cursor is not None:
                start = ChainPosition(cursor.last_sequence_id, cursor.last_hash)
                report = await self._check_cursor(start, mode)

        if report is None:
            progress = VerificationProgress()
            try:
                report = await self.verifier.verify(
                    mode=mode,
                    start=start,
                    max_entries=max_entries,
                    cancel=cancel,
                    progress=progress,
                )
            except MissingKeyVersionError as exc:
                report = self._incomplete(exc, start, mode, progress)

        VERIFICATION_RUNS.labels(status=report.status.value).inc()
        await self._follow_cursor(report)
        if record:
            await self.recorder.record(report, source=source)
        return report

    async def status(self) -> ChainStatus:
        latest = await self.recorder.latest()
        if latest is None:
            return ChainStatus(AlertLevel.YELLOW, "Chain has never been verified", None)

        level = alert_level(latest.status)
        if level == AlertLevel.GREEN:
            message = f"Chain intact ({latest.verified_entries} entries verified)"
        elif level == AlertLevel.RED:
            message = f"Tamper evidence at sequence id {latest.broken_at_sequence_id}"
        else:
            error = (latest.details or {}).get("error") or "run did not finish"
            message = f"Last verification incomplete: {error}"
        return ChainStatus(level, message, latest)

    async def summary(self, days: int = 7) -> RunSummary:
        return await self.recorder.summary(days=days)

    # ── Cursor ─────────────────────────────────────────────────────────── #

    async def load_cursor(self) -> VerificationCursor | None:
        async with self._session_factory() as db:
            try:
                return await db.get(VerificationCursor, CURSOR_ID)
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    "Could not read verification cursor", code=ErrorCode.STORE_READ_FAILED
                ) from exc

    async def _check_cursor(
        self, start: ChainPosition, mode: VerifyMode
    ) -> VerificationReport | None:
        async with self._session_factory() as db:
            entry = await SqlChainStore(db).get(start.sequence_id)
        actual = entry.hash if entry is not None else ""
        if actual == start.hash:
            return None

        found = ChainBreak(
            sequence_id=start.sequence_id,
            reason=BreakReason.CURSOR_MISMATCH,
            expected=start.hash,
            actual=actual,
        )
        CHAIN_BREAKS.labels(reason=found.reason.value).inc()
        _log.error(
            "chain_cursor_mismatch",
            sequence_id=start.sequence_id,
            expected=start.hash,
            actual=actual,
        )
        now = utcnow()
        return VerificationReport(
            status=RunStatus.BROKEN,
            complete=True,
            scope=RunMode.INCREMENTAL,
            break_policy=mode,
            total_entries=0,
            verified_entries=0,
            started_at=now,
            finished_at=now,
            last_verified_sequence_id=start.sequence_id,
            last_verified_hash=start.hash,
            start_sequence_id=start.sequence_id,
            breaks=[found],
        )

    async def _follow_cursor(self, report: VerificationReport) -> None:
        if report.status == RunStatus.INTACT and report.last_verified_sequence_id > 0:
            await self._save_cursor(report.last_verified_sequence_id, report.last_verified_hash)
        elif report.status == RunStatus.BROKEN and report.scope == RunMode.FULL:
            await self._clear_cursor()

    async def _save_cursor(self, sequence_id: int, entry_hash: str) -> None:
        async with self._session_factory() as db:
            try:
                cursor = await db.get(VerificationCursor, CURSOR_ID)
                if cursor is None:
                    db.add(
                        VerificationCursor(
                            id=CURSOR_ID, last_sequence_id=sequence_id, last_hash=entry_hash
                        )
                    )
                elif sequence_id >= cursor.last_sequence_id:
                    cursor.last_sequence_id = sequence_id
                    cursor.last_hash = entry_hash
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Could not update verification cursor") from exc
        _log.debug("verification_cursor_advanced", sequence_id=sequence_id)

    async def _clear_cursor(self) -> None:
        async with self._session_factory() as db:
            try:
                cursor = await db.get(VerificationCursor, CURSOR_ID)
                if cursor is None:
                    return
                await db.delete(cursor)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Could not reset verification cursor") from exc
        _log.warning("verification_cursor_reset")

    def _incomplete(
        self,
        exc: MissingKeyVersionError,
        start: ChainPosition | None,
        mode: VerifyMode,
        progress: VerificationProgress,
    ) -> VerificationReport:
        _log.error("chain_verification_incomplete", **exc.detail)
        return VerificationReport(
            status=RunStatus.INCOMPLETE,
            complete=False,
            scope=RunMode.FULL if start is None else RunMode.INCREMENTAL,
            break_policy=mode,
            total_entries=progress.total_entries,
            verified_entries=progress.verified_entries,
            started_at=progress.started_at,
            finished_at=utcnow(),
            last_verified_sequence_id=progress.last_sequence_id,
            last_verified_hash=progress.last_hash,
            start_sequence_id=start.sequence_id if start else 0,
            error=exc.message,
            error_detail={"code": exc.code.value, **exc.detail},
        )
