"""
Assembly of the chain services for one process.

The API and the CLI both build their services here, so an append engine
(and the lock that serialises appends) is shared by every caller in the
process instead of being created per request.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.config.settings import Settings
from auditchain.db.session import get_session_factory
from auditchain.services.chain.engine import AppendEngine
from auditchain.services.chain.query import ChainQueryService
from auditchain.services.chain.secrets import DatabaseSecretStore, SecretStore
from auditchain.services.chain.verification import VerificationService


@dataclass(slots=True)
class ChainServices:
    session_factory: async_sessionmaker[AsyncSession]
    secret_store: SecretStore
    append_engine: AppendEngine
    verification: VerificationService
    query: ChainQueryService


def build_chain_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    secret_store: SecretStore | None = None,
) -> ChainServices:
    factory = session_factory or get_session_factory(settings)
    store = secret_store or DatabaseSecretStore(factory)
    return ChainServices(
        session_factory=factory,
        secret_store=store,
        append_engine=AppendEngine(
            factory, store, timeout_seconds=settings.append_timeout_seconds
        ),
        verification=VerificationService(
            factory,
            store,
            batch_size=settings.verify_batch_size,
            default_mode=settings.verify_mode,
        ),
        query=ChainQueryService(factory, export_max_entries=settings.export_max_entries),
    )


async def bootstrap_secret(services: ChainServices, settings: Settings) -> int | None:
    """Seed key version 1 from AUDIT_SECRET when no key exists yet."""
    if settings.audit_secret is None:
        return None
    return await services.secret_store.bootstrap(settings.audit_secret.get_secret_value())
