"""Verification report, run history and chain status schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from auditchain.services.chain.verification import AlertLevel


class ChainBreakOut(BaseModel):
    sequence_id: int
    reason: str
    expected: str
    actual: str
    expected_sequence_id: int | None = None


class VerificationReportOut(BaseModel):
    status: str
    intact: bool
    complete: bool
    scope: str
    break_policy: str
    total_entries: int
    verified_entries: int
    broken_at_sequence_id: int | None
    expected_hash: str | None
    actual_hash: str | None
    breaks: list[ChainBreakOut]
    start_sequence_id: int
    last_verified_sequence_id: int
    last_verified_hash: str
    error: str | None
    error_detail: dict[str, Any]
    started_at: datetime
    finished_at: datetime


class VerificationRunOut(BaseModel):
    id: int
    run_at: datetime
    intact: bool
    status: str
    scope: str
    source: str
    total_entries: int
    verified_entries: int
    broken_at_sequence_id: int | None
    details: dict[str, Any]

    model_config = {"from_attributes": True}


class RunSummaryOut(BaseModel):
    window_days: int
    total_runs: int
    failed_runs: int
    incomplete_runs: int
    success_rate: float | None
    failures: list[VerificationRunOut]

    model_config = {"from_attributes": True}


class ChainStatusOut(BaseModel):
    level: AlertLevel
    message: str
    latest_run: VerificationRunOut | None

    model_config = {"from_attributes": True}
