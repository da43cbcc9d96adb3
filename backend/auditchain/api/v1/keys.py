"""Audit key management endpoints. Operator token required."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from auditchain.api.deps import OperatorOnly, get_secret_store
from auditchain.schemas.keys import KeyVersionOut, RotateKeyRequest, RotateKeyResponse
from auditchain.services.chain.secrets import SecretStore

router = APIRouter(prefix="/keys", tags=["keys"], dependencies=[OperatorOnly])


@router.post(
    "/rotate",
    response_model=RotateKeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Rotate the audit signing key",
)
async def rotate_key(
    store: Annotated[SecretStore, Depends(get_secret_store)],
    body: RotateKeyRequest | None = None,
) -> RotateKeyResponse:
    """
    Register a new key version; new entries are signed with it immediately.

    Older versions stay available so existing entries keep verifying.
    """
    secret = body.secret.get_secret_value() if body and body.secret else None
    version = await store.rotate(secret)
    return RotateKeyResponse(version=version)


@router.get("", response_model=list[KeyVersionOut], summary="List key versions")
async def list_keys(
    store: Annotated[SecretStore, Depends(get_secret_store)],
) -> list[KeyVersionOut]:
    versions = await store.versions()
    active = versions[-1].version if versions else None
    return [
        KeyVersionOut(version=v.version, created_at=v.created_at, active=v.version == active)
        for v in versions
    ]
