"""Audit chain API endpoints: append, list, verify and export."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from auditchain.api.deps import get_append_engine, get_query_service, get_verification_service
from auditchain.config.settings import VerifyMode
from auditchain.schemas.chain import (
    AppendRequest,
    AppendResponse,
    ChainEntryListResponse,
    ChainEntryOut,
    ExportResponse,
)
from auditchain.schemas.verification import VerificationReportOut
from auditchain.services.chain.engine import AppendEngine
from auditchain.services.chain.query import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, ChainQueryService
from auditchain.services.chain.verification import VerificationService

router = APIRouter(prefix="/chain", tags=["chain"])


@router.post(
    "/entries",
    response_model=AppendResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Append an audit entry",
)
async def append_entry(
    body: AppendRequest,
    engine: Annotated[AppendEngine, Depends(get_append_engine)],
) -> AppendResponse:
    """
    Append one entry to the chain and return its sequence id.

    This is the only write path into the chain. The timestamp, hash and
    key version are assigned server-side.
    """
    sequence_id = await engine.append(
        actor_id=body.actor_id,
        action=body.action,
        resource_type=body.resource_type,
        resource_id=body.resource_id,
        details=body.details,
        idempotency_key=body.idempotency_key,
    )
    return AppendResponse(sequence_id=sequence_id)


@router.get("/entries", response_model=ChainEntryListResponse, summary="List recent entries")
async def list_entries(
    query: Annotated[ChainQueryService, Depends(get_query_service)],
    action: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
) -> ChainEntryListResponse:
    entries = await query.list_recent(action=action, since=since, until=until, limit=limit)
    items = [ChainEntryOut.model_validate(e) for e in entries]
    return ChainEntryListResponse(items=items, count=len(items))


@router.post("/verify", response_model=VerificationReportOut, summary="Verify chain integrity")
async def verify_chain(
    verification: Annotated[VerificationService, Depends(get_verification_service)],
    mode: VerifyMode | None = Query(default=None),
    incremental: bool = Query(default=False),
    max_entries: int | None = Query(default=None, ge=1),
    record: bool = Query(default=True),
) -> VerificationReportOut:
    """
    Recompute every hash and report the first (or every) break.

    A broken chain is a normal 200 response with ``intact: false``.
    """
    report = await verification.run(
        mode=mode,
        incremental=incremental,
        max_entries=max_entries,
        record=record,
        source="api",
    )
    return VerificationReportOut.model_validate(report.to_dict())


@router.get("/export", response_model=ExportResponse, summary="Export entries for compliance")
async def export_chain(
    query: Annotated[ChainQueryService, Depends(get_query_service)],
    since: datetime | None = Query(default=None, alias="from"),
    until: datetime | None = Query(default=None, alias="to"),
    action: str | None = Query(default=None),
) -> ExportResponse:
    return ExportResponse.model_validate(
        await query.export(since=since, until=until, action=action)
    )
