"""
Versioned secret store for audit chain keys.

The store is append-only, exactly like the chain: rotation adds a version
and never touches older ones, because the verifier needs every historical
key for as long as the audit trail is retained. The active signing key is
the highest version; inserting a new version is the atomic switch of the
"current version" pointer.

Two implementations:
  - DatabaseSecretStore: the ``audit_secrets`` table (production).
  - InMemorySecretStore: injected into engines and verifiers under test.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.config.settings import MIN_SECRET_LENGTH, is_weak_secret
from auditchain.core.errors import ConfigurationError, ErrorCode, PersistenceError
from auditchain.core.metrics import KEY_ROTATIONS
from auditchain.core.security import generate_audit_secret
from auditchain.db.base import utcnow
from auditchain.db.models.secret import SecretVersion

_log = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ActiveKey:
    """The signing key new entries are hashed with."""

    version: int
    secret: str


@dataclass(frozen=True, slots=True)
class KeyVersionInfo:
    """Key metadata safe to show to operators (no key material)."""

    version: int
    created_at: datetime


def _validate_new_secret(secret: str) -> None:
    if is_weak_secret(secret):
        raise ConfigurationError(
            f"New audit secret must be at least {MIN_SECRET_LENGTH} characters "
            "and not a placeholder value",
            code=ErrorCode.CFG_SECRET_WEAK,
        )


class SecretStore(ABC):
    """Read-shared, append-only store of versioned HMAC keys."""

    @abstractmethod
    async def get(self, version: int) -> str | None:
        """Return the secret for ``version``, or None if it does not exist."""

    @abstractmethod
    async def latest_version(self) -> int | None:
        """Return the highest registered version, or None if empty."""

    @abstractmethod
    async def _insert(self, version: int, secret: str) -> None:
        """Persist a new version. Raise ConfigurationError on a collision."""

    @abstractmethod
    async def versions(self) -> list[KeyVersionInfo]:
        """List all versions, oldest first."""

    async def active(self) -> ActiveKey:
        """
        Resolve the key that new entries must be hashed with.

        Raises:
            ConfigurationError: If no key is provisioned.
        """
        version = await self.latest_version()
        if version is None:
            raise ConfigurationError(
                "No audit key version is provisioned; run key rotation first",
                code=ErrorCode.CFG_SECRET_MISSING,
            )
        secret = await self.get(version)
        if secret is None:
            raise ConfigurationError(
                f"Active audit key version {version} has no secret",
                code=ErrorCode.CFG_SECRET_MISSING,
            )
        return ActiveKey(version=version, secret=secret)

    async def rotate(self, new_secret: str | None = None) -> int:
        """
        Register a new key version one above the current maximum.

        Generates key material when ``new_secret`` is omitted. Old versions
        are left untouched.

        Raises:
            ConfigurationError: If the secret is weak, or a concurrent
                rotation claimed the same version number (retry).
        """
        secret = new_secret if new_secret is not None else generate_audit_secret()
        _validate_new_secret(secret)

        current = await self.latest_version()
        version = (current or 0) + 1
        await self._insert(version, secret)

        KEY_ROTATIONS.inc()
        _log.info("audit_key_rotated", key_version=version, previous_version=current)
        return version

    async def bootstrap(self, secret: str) -> int | None:
        """Register ``secret`` as version 1 if the store is empty. Returns the version created."""
        if await self.latest_version() is not None:
            return None
        _validate_new_secret(secret)
        try:
            await self._insert(1, secret)
        except ConfigurationError:
            # Another process bootstrapped first.
            return None
        _log.info("audit_key_bootstrapped", key_version=1)
        return 1


class InMemorySecretStore(SecretStore):
    """Process-local store; versions live in a dict."""

    def __init__(self, secrets: dict[int, str] | None = None) -> None:
        self._secrets: dict[int, str] = dict(secrets or {})
        self._created: dict[int, datetime] = {v: utcnow() for v in self._secrets}
        self._lock = asyncio.Lock()

    async def get(self, version: int) -> str | None:
        return self._secrets.get(version)

    async def latest_version(self) -> int | None:
        return max(self._secrets) if self._secrets else None

    async def _insert(self, version: int, secret: str) -> None:
        async with self._lock:
            if version in self._secrets:
                raise ConfigurationError(
                    f"Audit key version {version} already exists",
                    code=ErrorCode.CFG_KEY_VERSION_CONFLICT,
                    detail={"key_version": version},
                )
            self._secrets[version] = secret
            self._created[version] = utcnow()

    async def versions(self) -> list[KeyVersionInfo]:
        return [
            KeyVersionInfo(version=v, created_at=self._created[v])
            for v in sorted(self._secrets)
        ]

    def forget(self, version: int) -> None:
        """Drop a version. Only used to simulate lost key material in tests."""
        self._secrets.pop(version, None)
        self._created.pop(version, None)


class DatabaseSecretStore(SecretStore):
    """
    Secret store backed by the ``audit_secrets`` table.

    Secrets are cached per process after the first read; versions are
    immutable, so a cached value can never go stale.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._cache: dict[int, str] = {}

    async def get(self, version: int) -> str | None:
        if version in self._cache:
            return self._cache[version]
        try:
            async with self._session_factory() as db:
                row = await db.get(SecretVersion, version)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not read audit key", code=ErrorCode.STORE_READ_FAILED
            ) from exc
        if row is None:
            return None
        self._cache[version] = row.secret
        return row.secret

    async def latest_version(self) -> int | None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(func.max(SecretVersion.version)))
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not read audit key versions", code=ErrorCode.STORE_READ_FAILED
            ) from exc

    async def _insert(self, version: int, secret: str) -> None:
        async with self._session_factory() as db:
            db.add(SecretVersion(version=version, secret=secret))
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ConfigurationError(
                    f"Audit key version {version} was created concurrently; retry rotation",
                    code=ErrorCode.CFG_KEY_VERSION_CONFLICT,
                    detail={"key_version": version},
                ) from exc
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Could not store audit key") from exc
        self._cache[version] = secret

    async def versions(self) -> list[KeyVersionInfo]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(SecretVersion.version, SecretVersion.created_at).order_by(
                        SecretVersion.version
                    )
                )
                return [
                    KeyVersionInfo(version=version, created_at=created_at)
                    for version, created_at in result.all()
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Could not list audit key versions", code=ErrorCode.STORE_READ_FAILED
            ) from exc
