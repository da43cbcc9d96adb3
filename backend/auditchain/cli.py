"""
auditchain command-line interface (Typer).

Operator tooling that talks to the database directly: verification with
coloured outcome and exit codes, listing, compliance export, key rotation
and run history. Exit codes:

  0  chain intact / command succeeded
  1  tamper evidence found (broken chain, red status)
  2  incomplete verification, yellow status, or an operational error
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import typer

from auditchain.config.logging_config import configure_logging
from auditchain.config.settings import Settings, VerifyMode, get_settings
from auditchain.core.errors import AppError
from auditchain.db.migrate import upgrade_to_head
from auditchain.db.session import dispose_engine
from auditchain.services.chain.query import entry_to_dict
from auditchain.services.chain.verification import AlertLevel, alert_level
from auditchain.services.chain.verifier import VerificationReport
from auditchain.services.chain.wiring import ChainServices, bootstrap_secret, build_chain_services

SUCCESS_EXIT_CODE = 0
BROKEN_EXIT_CODE = 1
INCOMPLETE_EXIT_CODE = 2

_LEVEL_COLOURS = {
    AlertLevel.GREEN: typer.colors.GREEN,
    AlertLevel.RED: typer.colors.RED,
    AlertLevel.YELLOW: typer.colors.YELLOW,
}
_LEVEL_EXIT_CODES = {
    AlertLevel.GREEN: SUCCESS_EXIT_CODE,
    AlertLevel.RED: BROKEN_EXIT_CODE,
    AlertLevel.YELLOW: INCOMPLETE_EXIT_CODE,
}

T = TypeVar("T")


@dataclass(frozen=True)
class CliConfig:
    """Global CLI options shared by every command."""

    settings: Settings
    as_json: bool


def _require_config(ctx: typer.Context) -> CliConfig:
    config = ctx.obj
    if not isinstance(config, CliConfig):
        raise RuntimeError("CLI configuration not initialized")
    return config


def _run(cfg: CliConfig, action: Callable[[ChainServices], Awaitable[T]]) -> T:
    """Build the chain services, run one coroutine, map AppError to exit code 2."""

    async def _main() -> T:
        services = build_chain_services(cfg.settings)
        try:
            await bootstrap_secret(services, cfg.settings)
            return await action(services)
        finally:
            await dispose_engine()

    try:
        return asyncio.run(_main())
    except AppError as exc:
        _emit_error(exc, cfg.as_json)
        raise typer.Exit(code=INCOMPLETE_EXIT_CODE) from exc


def _emit_error(exc: AppError, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(exc.to_dict()), err=True)
        return
    typer.secho(f"error [{exc.code.value}]: {exc.message}", fg=typer.colors.RED, err=True)


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _report_level(report: VerificationReport) -> AlertLevel:
    if report.breaks:
        return AlertLevel.RED
    if report.intact and report.complete:
        return AlertLevel.GREEN
    return AlertLevel.YELLOW


def _render_report(report: VerificationReport) -> list[str]:
    lines = [
        f"Entries verified: {report.verified_entries}/{report.total_entries} "
        f"({report.scope.value}, {report.break_policy.value})"
    ]
    for found in report.breaks:
        lines.append(f"  #{found.sequence_id} {found.reason.value}")
        lines.append(f"    expected: {found.expected or '<empty>'}")
        lines.append(f"    actual:   {found.actual or '<empty>'}")
    if report.error:
        lines.append(f"  error: {report.error}")
    return lines


app = typer.Typer(no_args_is_help=True, help="Tamper-evident audit chain tooling")


@app.callback()
def main(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON"),
    database_url: str | None = typer.Option(
        None, "--database-url", help="Override DATABASE_URL for this invocation"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for CLI runs"),
) -> None:
    """Configure settings and logging for every subcommand."""
    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    configure_logging(log_level=log_level.upper(), json_logs=settings.log_json)
    ctx.obj = CliConfig(settings=settings, as_json=as_json)


@app.command()
def verify(
    ctx: typer.Context,
    mode: VerifyMode | None = typer.Option(None, help="first_break or all_breaks"),
    incremental: bool = typer.Option(False, help="Resume from the last intact position"),
    max_entries: int | None = typer.Option(None, min=1, help="Stop after this many entries"),
    record: bool = typer.Option(True, help="Record the run in verification history"),
) -> None:
    """Recompute every hash and report tamper evidence."""
    cfg = _require_config(ctx)
    report = _run(
        cfg,
        lambda s: s.verification.run(
            mode=mode,
            incremental=incremental,
            max_entries=max_entries,
            record=record,
            source="cli",
        ),
    )
    level = _report_level(report)

    if cfg.as_json:
        _emit_json(report.to_dict())
    else:
        headline = {
            AlertLevel.GREEN: "Chain intact",
            AlertLevel.RED: f"Chain BROKEN at sequence id {report.broken_at_sequence_id}",
            AlertLevel.YELLOW: "Verification incomplete",
        }[level]
        typer.secho(headline, fg=_LEVEL_COLOURS[level], bold=True)
        for line in _render_report(report):
            typer.echo(line)
    raise typer.Exit(code=_LEVEL_EXIT_CODES[level])


@app.command("list")
def list_entries(
    ctx: typer.Context,
    action: str | None = typer.Option(None, help="Only entries with this action"),
    since: datetime | None = typer.Option(None, help="Only entries at or after (UTC)"),
    until: datetime | None = typer.Option(None, help="Only entries at or before (UTC)"),
    limit: int = typer.Option(50, min=1, max=1000),
) -> None:
    """Show recent entries, newest first."""
    cfg = _require_config(ctx)
    entries = _run(
        cfg,
        lambda s: s.query.list_recent(action=action, since=since, until=until, limit=limit),
    )
    rows = [entry_to_dict(e) for e in entries]
    if cfg.as_json:
        _emit_json(rows)
        return
    if not rows:
        typer.echo("No entries.")
        return
    for row in rows:
        resource = row["resource_type"]
        if row["resource_id"]:
            resource = f"{resource}:{row['resource_id']}"
        typer.echo(
            f"#{row['sequence_id']:<8} {row['timestamp']}  {row['action']:<32} "
            f"{row['actor_id']:<24} {resource}"
        )


@app.command()
def export(
    ctx: typer.Context,
    output: Path = typer.Option(..., "--output", "-o", help="File to write the export to"),
    since: datetime | None = typer.Option(None, "--from", help="Start of window (UTC)"),
    until: datetime | None = typer.Option(None, "--to", help="End of window (UTC)"),
    action: str | None = typer.Option(None, help="Only entries with this action"),
) -> None:
    """Write a compliance export (JSON) of the chain."""
    cfg = _require_config(ctx)
    data = _run(cfg, lambda s: s.query.export(since=since, until=until, action=action))
    output.write_text(json.dumps(data, indent=2), encoding="utf-8")
    if cfg.as_json:
        _emit_json({"output": str(output), "total_entries": data["total_entries"]})
    else:
        typer.secho(
            f"Exported {data['total_entries']} entries to {output}", fg=typer.colors.GREEN
        )


@app.command("rotate-key")
def rotate_key(
    ctx: typer.Context,
    secret: str | None = typer.Option(
        None,
        envvar="AUDITCHAIN_NEW_SECRET",
        help="New key material; generated when omitted",
    ),
) -> None:
    """Register a new audit key version. Older versions stay available."""
    cfg = _require_config(ctx)
    version = _run(cfg, lambda s: s.secret_store.rotate(secret))
    if cfg.as_json:
        _emit_json({"version": version})
    else:
        typer.secho(f"Active audit key is now version {version}", fg=typer.colors.GREEN)


@app.command()
def runs(
    ctx: typer.Context,
    limit: int = typer.Option(20, min=1, max=500),
    summary: bool = typer.Option(False, help="Show success rate over a window instead"),
    days: int = typer.Option(7, min=1, max=365, help="Summary window in days"),
) -> None:
    """Show verification run history."""
    cfg = _require_config(ctx)
    if summary:
        result = _run(cfg, lambda s: s.verification.summary(days=days))
        if cfg.as_json:
            _emit_json(
                {
                    "window_days": result.window_days,
                    "total_runs": result.total_runs,
                    "failed_runs": result.failed_runs,
                    "incomplete_runs": result.incomplete_runs,
                    "success_rate": result.success_rate,
                    "failures": [r.id for r in result.failures],
                }
            )
            return
        rate = "n/a" if result.success_rate is None else f"{result.success_rate}%"
        typer.echo(
            f"Last {result.window_days} days: {result.total_runs} runs, "
            f"{result.failed_runs} broken, {result.incomplete_runs} incomplete, "
            f"success rate {rate}"
        )
        for run in result.failures:
            typer.secho(
                f"  run {run.id} at {run.run_at}: broken at #{run.broken_at_sequence_id}",
                fg=typer.colors.RED,
            )
        return

    history = _run(cfg, lambda s: s.verification.recorder.recent(limit=limit))
    if cfg.as_json:
        _emit_json(
            [
                {
                    "id": r.id,
                    "run_at": r.run_at,
                    "status": r.status,
                    "scope": r.scope,
                    "source": r.source,
                    "total_entries": r.total_entries,
                    "verified_entries": r.verified_entries,
                    "broken_at_sequence_id": r.broken_at_sequence_id,
                }
                for r in history
            ]
        )
        return
    for r in history:
        level = alert_level(r.status)
        typer.secho(
            f"{r.id:>6} {r.run_at}  {r.status:<10} {r.scope:<11} "
            f"{r.verified_entries}/{r.total_entries}  [{r.source}]",
            fg=_LEVEL_COLOURS[level],
        )


@app.command()
def status(ctx: typer.Context) -> None:
    """Alert level of the latest verification run."""
    cfg = _require_config(ctx)
    result = _run(cfg, lambda s: s.verification.status())
    if cfg.as_json:
        latest = result.latest_run
        _emit_json(
            {
                "level": result.level.value,
                "message": result.message,
                "latest_run_id": latest.id if latest else None,
            }
        )
    else:
        typer.secho(
            f"[{result.level.value.upper()}] {result.message}",
            fg=_LEVEL_COLOURS[result.level],
            bold=True,
        )
    raise typer.Exit(code=_LEVEL_EXIT_CODES[result.level])


@app.command()
def migrate(ctx: typer.Context) -> None:
    """Apply database migrations, including the append-only triggers."""
    cfg = _require_config(ctx)
    upgrade_to_head(cfg.settings.database_url)
    typer.secho("Database is up to date", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
