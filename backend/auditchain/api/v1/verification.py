"""Verification history and chain status endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from auditchain.api.deps import get_verification_service
from auditchain.schemas.verification import ChainStatusOut, RunSummaryOut, VerificationRunOut
from auditchain.services.chain.verification import VerificationService

router = APIRouter(prefix="/verification", tags=["verification"])


@router.get("/runs", response_model=list[VerificationRunOut], summary="Recent verification runs")
async def list_runs(
    verification: Annotated[VerificationService, Depends(get_verification_service)],
    limit: int = Query(default=20, ge=1, le=500),
) -> list[VerificationRunOut]:
    runs = await verification.recorder.recent(limit=limit)
    return [VerificationRunOut.model_validate(r) for r in runs]


@router.get("/runs/summary", response_model=RunSummaryOut, summary="Run success rate")
async def run_summary(
    verification: Annotated[VerificationService, Depends(get_verification_service)],
    days: int = Query(default=7, ge=1, le=365),
) -> RunSummaryOut:
    return RunSummaryOut.model_validate(await verification.summary(days=days))


@router.get("/status", response_model=ChainStatusOut, summary="Chain alert status")
async def chain_status(
    verification: Annotated[VerificationService, Depends(get_verification_service)],
) -> ChainStatusOut:
    """Green when the last run was intact, red when broken, yellow otherwise."""
    return ChainStatusOut.model_validate(await verification.status())
