"""Audit chain schema and immutability triggers.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None

IMMUTABLE_TABLES = ("audit_chain", "audit_secrets", "audit_verification_runs")

_PG_FUNCTION = """
CREATE OR REPLACE FUNCTION auditchain_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'Security violation: % is append-only; % rejected',
        TG_TABLE_NAME, TG_OP;
END;
$$ LANGUAGE plpgsql;
"""


def _install_triggers() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        op.execute(_PG_FUNCTION)
        for table in IMMUTABLE_TABLES:
            op.execute(
                f"CREATE TRIGGER {table}_immutable BEFORE UPDATE OR DELETE ON {table} "
                "FOR EACH ROW EXECUTE FUNCTION auditchain_reject_mutation()"
            )
    elif dialect == "sqlite":
        for table in IMMUTABLE_TABLES:
            for operation in ("UPDATE", "DELETE"):
                op.execute(
                    f"CREATE TRIGGER {table}_no_{operation.lower()} BEFORE {operation} "
                    f"ON {table} BEGIN "
                    f"SELECT RAISE(ABORT, '{table} is append-only; {operation} rejected'); "
                    "END"
                )


def _drop_triggers() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        for table in IMMUTABLE_TABLES:
            op.execute(f"DROP TRIGGER IF EXISTS {table}_immutable ON {table}")
        op.execute("DROP FUNCTION IF EXISTS auditchain_reject_mutation()")
    elif dialect == "sqlite":
        for table in IMMUTABLE_TABLES:
            for operation in ("update", "delete"):
                op.execute(f"DROP TRIGGER IF EXISTS {table}_no_{operation}")


def upgrade() -> None:
    # audit_chain
    op.create_table(
        "audit_chain",
        sa.Column("sequence_id", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("previous_hash", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(100), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("details", sa.JSON, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("key_version", sa.Integer, nullable=False),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.UniqueConstraint("previous_hash", name="uq_audit_chain_previous_hash"),
        sa.UniqueConstraint("hash", name="uq_audit_chain_hash"),
        sa.UniqueConstraint("idempotency_key", name="uq_audit_chain_idempotency_key"),
    )
    op.create_index("ix_audit_chain_actor_id", "audit_chain", ["actor_id"])
    op.create_index("ix_audit_chain_action", "audit_chain", ["action"])
    op.create_index("ix_audit_chain_timestamp", "audit_chain", ["timestamp"])
    op.create_index("ix_audit_chain_resource", "audit_chain", ["resource_type", "resource_id"])

    # audit_secrets
    op.create_table(
        "audit_secrets",
        sa.Column("version", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("secret", sa.Text, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # audit_verification_runs
    op.create_table(
        "audit_verification_runs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("intact", sa.Boolean, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("scope", sa.String(20), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("total_entries", sa.Integer, nullable=False),
        sa.Column("verified_entries", sa.Integer, nullable=False),
        sa.Column("broken_at_sequence_id", sa.Integer, nullable=True),
        sa.Column("details", sa.JSON, nullable=False),
    )
    op.create_index(
        "ix_audit_verification_runs_run_at", "audit_verification_runs", ["run_at"]
    )
    op.create_index(
        "ix_audit_verification_runs_status", "audit_verification_runs", ["status"]
    )

    # audit_verification_cursor (mutable operational state)
    op.create_table(
        "audit_verification_cursor",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("last_sequence_id", sa.Integer, nullable=False),
        sa.Column("last_hash", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    _install_triggers()


def downgrade() -> None:
    _drop_triggers()
    op.drop_table("audit_verification_cursor")
    op.drop_table("audit_verification_runs")
    op.drop_table("audit_secrets")
    op.drop_table("audit_chain")
