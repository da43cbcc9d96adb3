"""
FastAPI dependency providers.

The chain services live on ``app.state.chain`` for the life of the
process. Operator authorization for key management lives here, not in
routes.
"""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import Depends, Header, Request

from auditchain.config.settings import Settings
from auditchain.core.errors import ForbiddenError
from auditchain.core.security import safe_str_compare
from auditchain.services.chain.engine import AppendEngine
from auditchain.services.chain.query import ChainQueryService
from auditchain.services.chain.secrets import SecretStore
from auditchain.services.chain.verification import VerificationService
from auditchain.services.chain.wiring import ChainServices

_log = structlog.get_logger(__name__)


def get_chain_services(request: Request) -> ChainServices:
    return request.app.state.chain


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


Services = Annotated[ChainServices, Depends(get_chain_services)]


def get_append_engine(services: Services) -> AppendEngine:
    return services.append_engine


def get_verification_service(services: Services) -> VerificationService:
    return services.verification


def get_query_service(services: Services) -> ChainQueryService:
    return services.query


def get_secret_store(services: Services) -> SecretStore:
    return services.secret_store


async def require_operator_token(
    settings: Annotated[Settings, Depends(get_app_settings)],
    x_operator_token: Annotated[str | None, Header(alias="X-Operator-Token")] = None,
) -> None:
    """
    Gate privileged key-management calls on the operator token.

    Raises ForbiddenError when the header is missing or wrong.
    """
    if settings.operator_token is None:
        raise ForbiddenError("Key management over HTTP is disabled; no operator token configured")
    expected = settings.operator_token.get_secret_value()
    if not x_operator_token or not safe_str_compare(x_operator_token, expected):
        _log.warning("operator_token_rejected")
        raise ForbiddenError()


OperatorOnly = Depends(require_operator_token)
