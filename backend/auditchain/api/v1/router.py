"""API v1 router aggregator."""

from fastapi import APIRouter

from auditchain.api.v1 import chain, keys, verification

router = APIRouter(prefix="/api/v1")
router.include_router(chain.router)
router.include_router(keys.router)
router.include_router(verification.router)
