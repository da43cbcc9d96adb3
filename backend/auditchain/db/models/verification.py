"""
Verification run history and the incremental verification cursor.

Runs are immutable records for monitoring. The cursor is operational
state: it only remembers how far the chain was last proven intact.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.db.base import Base, utcnow


class RunStatus(StrEnum):
    """Outcome of a verification pass."""

    INTACT = "intact"
    BROKEN = "broken"
    INCOMPLETE = "incomplete"


class RunMode(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


class VerificationRun(Base):
    """Immutable record of one verification pass."""

    __tablename__ = "audit_verification_runs"
    __table_args__ = (Index("ix_audit_verification_runs_run_at", "run_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    intact: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False, default=RunMode.FULL.value)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="api")
    total_entries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verified_entries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    broken_at_sequence_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<VerificationRun #{self.id} {self.status}>"


class VerificationCursor(Base):
    """Single-row marker of the last position proven intact."""

    __tablename__ = "audit_verification_cursor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    last_sequence_id: Mapped[int] = mapped_column(Integer, nullable=False)
    last_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
