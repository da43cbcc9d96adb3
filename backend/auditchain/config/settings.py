"""
Application configuration via Pydantic Settings.

All values are sourced from environment variables or an .env file.
No defaults expose insecure behaviour in production.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import (
    BeforeValidator,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# Values shipped in early deployment templates. A chain keyed with any of
# these is forgeable by anyone who has read the templates.
PLACEHOLDER_SECRETS: frozenset[str] = frozenset(
    {
        "CHANGE-THIS-AUDIT-SECRET-IN-PRODUCTION",
        "default-audit-secret-CHANGE-IN-PRODUCTION",
        "changeme",
        "change-me",
        "secret",
    }
)

MIN_SECRET_LENGTH = 32


class Environment(StrEnum):
    """Deployment environment identifiers."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(StrEnum):
    """Structured log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class VerifyMode(StrEnum):
    """How the verifier reacts to a chain break."""

    FIRST_BREAK = "first_break"
    ALL_BREAKS = "all_breaks"


def _parse_cors_origins(value: str | list[str]) -> list[str]:
    """Accept comma-separated string or list for CORS origins."""
    if isinstance(value, list):
        return value
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def is_weak_secret(value: str | None) -> bool:
    """True for missing, blank, short or placeholder key material."""
    if value is None or not value.strip():
        return True
    if value.strip() in PLACEHOLDER_SECRETS:
        return True
    return len(value) < MIN_SECRET_LENGTH


class Settings(BaseSettings):
    """
    Centralised, type-validated application configuration.

    Reads from environment variables with an optional .env file.
    All secrets are Pydantic SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # ── Application ────────────────────────────────────────────────────── #
    app_name: str = Field(default="auditchain", description="Human-readable application name")
    app_version: str = Field(default="1.0.0", description="Semantic version string")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development|testing|production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode. Must be False in production.",
    )

    # ── Server ─────────────────────────────────────────────────────────── #
    host: str = Field(default="127.0.0.1", description="Bind host. Default local-only.")
    port: int = Field(default=8000, ge=1024, le=65535, description="Bind port")
    reload: bool = Field(default=False, description="Auto-reload on code change (dev only)")

    # ── CORS ───────────────────────────────────────────────────────────── #
    cors_origins: Annotated[list[str], BeforeValidator(_parse_cors_origins)] = Field(
        default=["http://localhost:5173"],
        description="Comma-separated list of allowed CORS origins",
    )

    # ── Database ───────────────────────────────────────────────────────── #
    database_url: str = Field(
        default="sqlite+aiosqlite:///./auditchain.db",
        description=(
            "Async SQLAlchemy connection string. "
            "Use sqlite+aiosqlite:// for local or postgresql+asyncpg:// for production."
        ),
    )
    db_pool_size: int = Field(default=5, ge=1, le=50, description="Connection pool size")
    db_max_overflow: int = Field(default=10, ge=0, le=100, description="Pool max overflow")
    db_echo: bool = Field(default=False, description="Log all SQL statements (debug only)")
    run_migrations_on_startup: bool = Field(
        default=True,
        description="Apply Alembic migrations when the API starts",
    )

    # ── Audit chain ────────────────────────────────────────────────────── #
    audit_secret: SecretStr | None = Field(
        default=None,
        description=(
            "Bootstrap HMAC key. Registered as key version 1 when the secret "
            "store is empty; ignored afterwards."
        ),
    )
    operator_token: SecretStr | None = Field(
        default=None,
        description=(
            "Token required for privileged key-management calls over HTTP. "
            "When unset, key management is only available through the CLI."
        ),
    )
    append_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Upper bound for a single append, lock wait included",
    )
    verify_batch_size: int = Field(
        default=1000,
        ge=1,
        le=50_000,
        description="Entries fetched per round trip while verifying",
    )
    verify_mode: VerifyMode = Field(
        default=VerifyMode.FIRST_BREAK,
        description="Default verification mode (first_break|all_breaks)",
    )
    export_max_entries: int = Field(
        default=100_000,
        ge=1,
        description="Largest compliance export; bigger windows are refused, never truncated",
    )

    # ── Logging ────────────────────────────────────────────────────────── #
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Minimum log level")
    log_json: bool = Field(default=True, description="Emit logs as JSON (False for dev console)")
    log_file: Path | None = Field(default=None, description="Optional log file path")

    # ── Validators ─────────────────────────────────────────────────────── #

    @field_validator("audit_secret")
    @classmethod
    def audit_secret_must_be_strong(cls, v: SecretStr | None) -> SecretStr | None:
        if v is not None and is_weak_secret(v.get_secret_value()):
            raise ValueError(
                f"audit_secret must be at least {MIN_SECRET_LENGTH} characters "
                "and not a placeholder value"
            )
        return v

    @field_validator("operator_token")
    @classmethod
    def operator_token_must_be_strong(cls, v: SecretStr | None) -> SecretStr | None:
        if v is not None and len(v.get_secret_value()) < MIN_SECRET_LENGTH:
            raise ValueError(f"operator_token must be at least {MIN_SECRET_LENGTH} characters")
        return v

    @model_validator(mode="after")
    def production_safety_checks(self) -> Settings:
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                raise ValueError("debug must be False in production")
            if self.reload:
                raise ValueError("reload must be False in production")
            if self.db_echo:
                raise ValueError("db_echo must be False in production")
            if self.operator_token is None:
                raise ValueError("operator_token is required in production")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the cached Settings singleton.

    Use dependency injection in FastAPI routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()
