"""Audit chain request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_serializer

from auditchain.services.chain.hasher import canonical_timestamp


class AppendRequest(BaseModel):
    actor_id: str = Field(min_length=1, max_length=255)
    action: str = Field(min_length=1, max_length=100)
    resource_type: str = Field(min_length=1, max_length=100)
    resource_id: str | None = Field(default=None, max_length=255)
    details: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Client retry key; a repeat returns the original sequence id",
    )


class AppendResponse(BaseModel):
    sequence_id: int


class ChainEntryOut(BaseModel):
    sequence_id: int
    previous_hash: str
    actor_id: str
    action: str
    resource_type: str
    resource_id: str | None
    details: dict[str, Any]
    timestamp: datetime
    key_version: int
    hash: str

    model_config = {"from_attributes": True}

    @field_serializer("timestamp")
    def _utc(self, value: datetime) -> str:
        return canonical_timestamp(value)


class ChainEntryListResponse(BaseModel):
    items: list[ChainEntryOut]
    count: int


class ExportFilters(BaseModel):
    from_: str | None = Field(default=None, alias="from")
    to: str | None = None
    action: str | None = None

    model_config = {"populate_by_name": True}


class ExportResponse(BaseModel):
    exported_at: str
    total_entries: int
    filters: ExportFilters
    entries: list[dict[str, Any]]
