"""
Tamper-evident audit chain model.

Each entry stores the HMAC of the previous entry, so any silent insertion,
deletion or modification of historical rows is detected on verification.
Rows are insert-only; the migration installs triggers that reject UPDATE
and DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from auditchain.db.base import Base, utcnow

GENESIS_PREVIOUS_HASH = ""


class ChainEntry(Base):
    """Single immutable audit fact, linked to its predecessor by hash."""

    __tablename__ = "audit_chain"
    __table_args__ = (
        Index("ix_audit_chain_timestamp", "timestamp"),
        Index("ix_audit_chain_resource", "resource_type", "resource_id"),
    )

    # Assigned by the append engine as tail + 1, never by the database.
    sequence_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=False
    )
    # Unique: two entries may never claim the same predecessor (a fork).
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    key_version: Mapped[int] = mapped_column(Integer, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # Client retry key; outside the hashed fields.
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )

    def __repr__(self) -> str:
        return f"<ChainEntry #{self.sequence_id} {self.action} [{self.actor_id}]>"
