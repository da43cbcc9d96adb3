"""Integration tests: the auditchain CLI against a migrated SQLite database."""
import asyncio
import json

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError
from typer.testing import CliRunner

from auditchain.cli import app
from auditchain.db.session import build_session_factory, dispose_engine
from auditchain.services.chain.engine import AppendEngine
from auditchain.services.chain.secrets import DatabaseSecretStore

from tests.conftest import TEST_SECRET

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


@pytest.fixture
def cli(db_path):
    url = f"sqlite+aiosqlite:///{db_path}"

    def _invoke(*args: str):
        return runner.invoke(app, ["--database-url", url, *args])

    result = _invoke("migrate")
    assert result.exit_code == 0, result.output
    yield _invoke
    asyncio.run(dispose_engine())


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    yield engine
    engine.dispose()


def _seed(db_path, n: int) -> None:
    async def _main() -> None:
        from sqlalchemy.ext.asyncio import create_async_engine

        engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
        factory = build_session_factory(engine)
        store = DatabaseSecretStore(factory)
        await store.bootstrap(TEST_SECRET)
        append = AppendEngine(factory, store)
        for i in range(n):
            await append.append(f"user-{i}", "record_viewed", "client", f"client-{i}")
        await engine.dispose()

    asyncio.run(_main())


def test_verify_empty_chain_is_green(cli):
    result = cli("verify")
    assert result.exit_code == 0
    assert "Chain intact" in result.stdout


def test_verify_json_output(cli, db_path):
    _seed(db_path, 3)
    result = cli("--json", "verify")
    assert result.exit_code == 0
    body = json.loads(result.stdout)
    assert body["intact"] is True
    assert body["verified_entries"] == 3


def test_chain_tables_reject_update_and_delete(cli, db_path, sync_engine):
    _seed(db_path, 1)
    with pytest.raises(DBAPIError):
        with sync_engine.begin() as conn:
            conn.execute(text("UPDATE audit_chain SET action = 'x' WHERE sequence_id = 1"))
    with pytest.raises(DBAPIError):
        with sync_engine.begin() as conn:
            conn.execute(text("DELETE FROM audit_chain"))
    with pytest.raises(DBAPIError):
        with sync_engine.begin() as conn:
            conn.execute(text("DELETE FROM audit_secrets"))


def test_verify_broken_chain_exits_1(cli, db_path, sync_engine):
    _seed(db_path, 3)
    with sync_engine.begin() as conn:
        conn.execute(text("DROP TRIGGER audit_chain_no_update"))
        conn.execute(text("UPDATE audit_chain SET actor_id = 'mallory' WHERE sequence_id = 2"))
    result = cli("verify")
    assert result.exit_code == 1
    assert "BROKEN at sequence id 2" in result.stdout

    status = cli("status")
    assert status.exit_code == 1
    assert "[RED]" in status.stdout


def test_status_before_any_run_is_yellow(cli):
    result = cli("status")
    assert result.exit_code == 2
    assert "never been verified" in result.stdout


def test_rotate_key_and_list(cli, db_path):
    _seed(db_path, 2)
    result = cli("rotate-key")
    assert result.exit_code == 0
    assert "version 2" in result.stdout

    listed = cli("--json", "list", "--limit", "5")
    rows = json.loads(listed.stdout)
    assert [r["sequence_id"] for r in rows] == [2, 1]
    assert "secret" not in listed.stdout


def test_rotate_key_rejects_weak_secret(cli):
    result = cli("rotate-key", "--secret", "changeme")
    assert result.exit_code == 2


def test_export_writes_file(cli, db_path, tmp_path):
    _seed(db_path, 2)
    out = tmp_path / "export.json"
    result = cli("export", "-o", str(out))
    assert result.exit_code == 0
    data = json.loads(out.read_text())
    assert data["total_entries"] == 2
    assert set(data) == {"exported_at", "total_entries", "filters", "entries"}


def test_runs_history_and_summary(cli, db_path):
    _seed(db_path, 1)
    cli("verify")
    cli("verify", "--no-record")
    history = json.loads(cli("--json", "runs").stdout)
    assert len(history) == 1
    assert history[0]["source"] == "cli"

    summary = json.loads(cli("--json", "runs", "--summary").stdout)
    assert summary["total_runs"] == 1
    assert summary["success_rate"] == 100.0
