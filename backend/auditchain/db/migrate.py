"""Programmatic Alembic upgrade, used on API startup and by ``auditchain migrate``."""

from __future__ import annotations

from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config

_log = structlog.get_logger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"


def alembic_config(database_url: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def upgrade_to_head(database_url: str) -> None:
    """Apply all pending migrations, including the immutability triggers."""
    command.upgrade(alembic_config(database_url), "head")
    _log.info("migrations_applied")
