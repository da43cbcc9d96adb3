"""
Verification run recorder.

Persists the outcome of each verification pass so broken or stalled
chains show up in monitoring history, and answers the history queries
behind the chain status view.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.core.errors import ErrorCode, PersistenceError
from auditchain.db.base import utcnow
from auditchain.db.models.verification import RunStatus, VerificationRun
from auditchain.services.chain.verifier import VerificationReport

_log = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Aggregate of the runs inside a trailing window."""

    window_days: int
    total_runs: int
    failed_runs: int
    incomplete_runs: int
    success_rate: float | None
    failures: list[VerificationRun]


def _run_details(report: VerificationReport) -> dict[str, Any]:
    details: dict[str, Any] = {
        "break_policy": report.break_policy.value,
        "complete": report.complete,
        "start_sequence_id": report.start_sequence_id,
        "last_verified_sequence_id": report.last_verified_sequence_id,
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat(),
    }
    if report.breaks:
        details["expected"] = report.expected_hash
        details["actual"] = report.actual_hash
        details["breaks"] = [b.to_dict() for b in report.breaks]
    if report.error:
        details["error"] = report.error
        details["error_detail"] = report.error_detail
    return details


class VerificationRunRecorder:
    """Owns creation of VerificationRun rows; reads them back for monitoring."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, report: VerificationReport, source: str = "api") -> VerificationRun:
        """
        Persist one report as an immutable run record.

        Raises:
            PersistenceError: The write failed. Alert on this separately
                from the verification outcome itself.
        """
        run = VerificationRun(
            run_at=utcnow(),
            intact=report.intact,
            status=report.status.value,
            scope=report.scope.value,
            source=source,
            total_entries=report.total_entries,
            verified_entries=report.verified_entries,
            broken_at_sequence_id=report.broken_at_sequence_id,
            details=_run_details(report),
        )
        async with self._session_factory() as db:
            db.add(run)
            try:
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                _log.error("verification_run_record_failed", status=report.status.value)
                raise PersistenceError("Verification run could not be recorded") from exc

        _log.info(
            "verification_run_recorded",
            run_id=run.id,
            status=run.status,
            scope=run.scope,
            source=source,
        )
        return run

    async def recent(self, limit: int = 20) -> list[VerificationRun]:
        async with self._session_factory() as db:
            try:
                result = await db.execute(
                    select(VerificationRun)
                    .order_by(VerificationRun.run_at.desc(), VerificationRun.id.desc())
                    .limit(limit)
                )
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    "Could not read verification runs", code=ErrorCode.STORE_READ_FAILED
                ) from exc
            return list(result.scalars().all())

    async def latest(self) -> VerificationRun | None:
        runs = await self.recent(limit=1)
        return runs[0] if runs else None

    async def summary(self, days: int = 7) -> RunSummary:
        """Counts and failure list for runs in the last ``days`` days."""
        since = utcnow() - timedelta(days=days)
        async with self._session_factory() as db:
            try:
                counts = await db.execute(
                    select(VerificationRun.status, func.count())
                    .where(VerificationRun.run_at >= since)
                    .group_by(VerificationRun.status)
                )
                by_status = {status: n for status, n in counts.all()}
                failures = await db.execute(
                    select(VerificationRun)
                    .where(
                        VerificationRun.run_at >= since,
                        VerificationRun.status == RunStatus.BROKEN.value,
                    )
                    .order_by(VerificationRun.run_at.desc())
                )
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    "Could not summarise verification runs", code=ErrorCode.STORE_READ_FAILED
                ) from exc
            failed_runs = list(failures.scalars().all())

        total = sum(by_status.values())
        failed = by_status.get(RunStatus.BROKEN.value, 0)
        return RunSummary(
            window_days=days,
            total_runs=total,
            failed_runs=failed,
            incomplete_runs=by_status.get(RunStatus.INCOMPLETE.value, 0),
            success_rate=(
                round(by_status.get(RunStatus.INTACT.value, 0) / total * 100, 2) if total else None
            ),
            failures=failed_runs,
        )
