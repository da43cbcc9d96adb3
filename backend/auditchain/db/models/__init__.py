"""Database model registry. Import all models here so Alembic can discover them."""

from auditchain.db.models.chain import GENESIS_PREVIOUS_HASH, ChainEntry
from auditchain.db.models.secret import SecretVersion
from auditchain.db.models.verification import (
    RunMode,
    RunStatus,
    VerificationCursor,
    VerificationRun,
)

__all__ = [
    "GENESIS_PREVIOUS_HASH",
    "ChainEntry",
    "RunMode",
    "RunStatus",
    "SecretVersion",
    "VerificationCursor",
    "VerificationRun",
]
