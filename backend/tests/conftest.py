"""
Shared pytest fixtures for auditchain tests.

Provides:
  - a file-backed async SQLite database per test (tables from the ORM
    metadata, so no immutability triggers: tests can tamper directly)
  - an in-memory secret store seeded with key version 1
  - the append engine, verifier and verification service over them
  - a FastAPI app and async HTTP client wired to the same database
"""
from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from auditchain.config.settings import Settings
from auditchain.db.base import Base
from auditchain.db.models.chain import ChainEntry
from auditchain.db.session import build_session_factory
from auditchain.main import create_app
from auditchain.services.chain.engine import AppendEngine
from auditchain.services.chain.secrets import InMemorySecretStore
from auditchain.services.chain.verification import VerificationService
from auditchain.services.chain.verifier import ChainVerifier

TEST_SECRET = "test-audit-secret-0123456789-abcdefghijklmnop"
ROTATED_SECRET = "rotated-audit-secret-9876543210-zyxwvutsrqpo"
OPERATOR_TOKEN = "operator-token-for-tests-only-0123456789"


# ─── Settings override ────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'auditchain.db'}",
        operator_token=OPERATOR_TOKEN,
        run_migrations_on_startup=False,
        cors_origins=["http://localhost:5173"],
        log_json=False,
    )


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(test_settings: Settings):
    """Async SQLite engine on a fresh file per test function."""
    engine = create_async_engine(
        test_settings.database_url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


# ─── Chain services ───────────────────────────────────────────────────────────

@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore({1: TEST_SECRET})


@pytest.fixture
def append_engine(session_factory, secret_store) -> AppendEngine:
    return AppendEngine(session_factory, secret_store, timeout_seconds=5.0)


@pytest.fixture
def verifier(session_factory, secret_store) -> ChainVerifier:
    return ChainVerifier(session_factory, secret_store, batch_size=2)


@pytest.fixture
def verification_service(session_factory, secret_store) -> VerificationService:
    return VerificationService(session_factory, secret_store, batch_size=2)


@pytest.fixture
def append_many(append_engine) -> Callable[..., Awaitable[list[int]]]:
    """Append ``n`` entries with distinct actions and return their sequence ids."""

    async def _append(n: int, action: str = "record_viewed") -> list[int]:
        ids = []
        for i in range(n):
            ids.append(
                await append_engine.append(
                    actor_id=f"user-{i}",
                    action=action,
                    resource_type="client",
                    resource_id=f"client-{i}",
                    details={"index": i, "reason": "treatment"},
                )
            )
        return ids

    return _append


@pytest.fixture
def tamper(session_factory) -> Callable[..., Awaitable[None]]:
    """Rewrite stored columns of one entry, bypassing the append engine."""

    async def _tamper(sequence_id: int, **values: Any) -> None:
        async with session_factory() as db:
            await db.execute(
                update(ChainEntry)
                .where(ChainEntry.sequence_id == sequence_id)
                .values(**values)
            )
            await db.commit()

    return _tamper


@pytest.fixture
def remove_entry(session_factory) -> Callable[[int], Awaitable[None]]:
    async def _remove(sequence_id: int) -> None:
        async with session_factory() as db:
            await db.execute(delete(ChainEntry).where(ChainEntry.sequence_id == sequence_id))
            await db.commit()

    return _remove


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest.fixture
def app(test_settings, session_factory, secret_store):
    """FastAPI test app sharing the test database and key store."""
    return create_app(
        settings=test_settings,
        session_factory=session_factory,
        secret_store=secret_store,
    )


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return {"X-Operator-Token": OPERATOR_TOKEN}
