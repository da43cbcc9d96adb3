"""
Structured error taxonomy for auditchain.

Every application error has:
  - A stable error code (prefixed by domain)
  - An HTTP status code
  - A human-readable message
  - An optional detail dict for machine consumers

A detected chain break is deliberately absent from this module: it is the
normal outcome of a verification run and travels inside the report.

No internal state (stack traces, DB internals, key material) is ever
surfaced to clients.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable, versioned error codes. Never reuse a retired code."""

    # Configuration / key material
    CFG_SECRET_MISSING = "CFG_001"
    CFG_SECRET_WEAK = "CFG_002"
    CFG_KEY_VERSION_CONFLICT = "CFG_003"

    # Key versions
    KEY_MISSING_VERSION = "KEY_001"

    # Store
    STORE_WRITE_FAILED = "STORE_001"
    STORE_READ_FAILED = "STORE_002"
    CHAIN_APPEND_TIMEOUT = "STORE_003"

    # Auth
    AUTH_OPERATOR_TOKEN_INVALID = "AUTH_001"

    # Generic
    VALIDATION_ERROR = "GEN_001"
    INTERNAL_ERROR = "GEN_002"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 500,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "detail": self.detail,
            }
        }


# ── Chain infrastructure errors ───────────────────────────────────────── #


class ConfigurationError(AppError):
    """Missing, weak or conflicting key material. Never degrade to a default key."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CFG_SECRET_MISSING,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code=code, message=message, http_status=500, detail=detail)


class PersistenceError(AppError):
    """The underlying store could not complete a read or write."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORE_WRITE_FAILED,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code=code, message=message, http_status=503, detail=detail)


class MissingKeyVersionError(AppError):
    """
    An entry references a key version the secret store cannot produce.

    This blocks verification of that entry. It is a key-retention problem,
    not evidence of tampering.
    """

    def __init__(self, key_version: int, sequence_id: int | None = None) -> None:
        detail: dict[str, Any] = {"key_version": key_version}
        if sequence_id is not None:
            detail["sequence_id"] = sequence_id
        super().__init__(
            code=ErrorCode.KEY_MISSING_VERSION,
            message=f"Audit key version {key_version} is not available",
            http_status=500,
            detail=detail,
        )
        self.key_version = key_version
        self.sequence_id = sequence_id


# ── Typed convenience subclasses ──────────────────────────────────────── #


class ForbiddenError(AppError):
    def __init__(self, message: str = "Operator token missing or invalid") -> None:
        super().__init__(
            code=ErrorCode.AUTH_OPERATOR_TOKEN_INVALID,
            message=message,
            http_status=403,
        )


class ValidationError(AppError):
    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            http_status=422,
            detail=detail,
        )
