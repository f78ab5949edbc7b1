"""CLI entrypoint for cardsync.

Commands
- test-connection: discover the address books behind a CardDAV URL
- subscribe:       bind a vault to a remote address book
- sync:            pull one subscription now
- sync-due:        pull every due subscription once
- logs:            page through a subscription's sync log
- run:             scheduler loop (sync-due every interval) under a PID lock

Notes
- Configuration precedence: CLI > ENV (CARDSYNC__) > YAML file, see config loader.
- Exit codes: 0 success, 2 partial (errors counted), 3 fatal.
"""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Any

import typer

from .config import AppConfig, load_config
from .errors import SyncError
from .logging import setup_logging
from .sync.context import RunContext
from .sync.orchestrator import FileLock, Scheduler, SyncService, build_service

app = typer.Typer(add_completion=False, help="CardDAV address book synchronization for a local contact store")

log = logging.getLogger(__name__)

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to YAML config file.", show_default=False)
_VERBOSE_OPTION = typer.Option(
    False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
)


def _load(config: Path | None, verbose: bool) -> AppConfig:
    overrides: dict[str, Any] = {}
    if verbose:
        overrides.setdefault("logging", {})["level"] = "DEBUG"
    cfg = load_config(file_path=str(config) if config else None, cli_overrides=overrides)
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


def _service(cfg: AppConfig) -> SyncService:
    try:
        return build_service(cfg)
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=3) from exc


def _summary(counts: dict[str, int]) -> str:
    return " ".join(f"{k}={counts[k]}" for k in ("created", "updated", "deleted", "skipped", "errors"))


@app.command("test-connection", help="Check credentials and list the remote address books.")
def test_connection(
    uri: str = typer.Argument(..., help="CardDAV server or address book URL."),
    username: str = typer.Option(..., "--username", "-u", help="CardDAV account name."),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, envvar="CARDSYNC_DAV_PASSWORD"
    ),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, verbose)
    result = _service(cfg).test_connection(uri, username, password)
    if not result.success:
        typer.echo(f"connection failed: {result.error}", err=True)
        raise typer.Exit(code=3)
    typer.echo(f"connection ok: {len(result.address_books)} address book(s)")
    for book in result.address_books:
        typer.echo(f"  {book.name}\t{book.path}")
    raise typer.Exit(code=0)


@app.command(help="Create a subscription binding a vault to a remote address book.")
def subscribe(
    uri: str = typer.Argument(..., help="Address book URL."),
    vault: str = typer.Option(..., "--vault", help="Local vault id."),
    user: str = typer.Option(..., "--user", help="Owning user id."),
    username: str = typer.Option(..., "--username", "-u", help="CardDAV account name."),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, envvar="CARDSYNC_DAV_PASSWORD"
    ),
    sync_way: str = typer.Option("pull", "--sync-way", help="pull | push | both"),
    frequency: int | None = typer.Option(
        None, "--frequency", min=1, help="Minutes between scheduled pulls.", show_default=False
    ),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, verbose)
    try:
        sub_id = _service(cfg).create_subscription(
            vault_id=vault,
            user_id=user,
            uri=uri,
            username=username,
            password=password,
            sync_way=sync_way,
            frequency=frequency,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--sync-way") from exc
    typer.echo(sub_id)
    raise typer.Exit(code=0)


@app.command(help="Pull one subscription now.")
def sync(
    subscription_id: str = typer.Argument(..., help="Subscription id."),
    vault: str = typer.Option(..., "--vault", help="Vault owning the subscription."),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, verbose)
    service = _service(cfg)
    try:
        counts = service.sync_subscription(RunContext.background(), subscription_id, vault)
    except SyncError as exc:
        log.error("sync-failed sub=%s err=%s", subscription_id, exc)
        typer.echo(f"sync failed: {exc}", err=True)
        raise typer.Exit(code=3) from exc
    typer.echo(f"cardsync sync summary: {_summary(counts.as_dict())}")
    raise typer.Exit(code=0 if counts.errors == 0 else 2)


@app.command("sync-due", help="Pull every subscription that is due, once.")
def sync_due(
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, verbose)
    report = _service(cfg).sync_all_due(RunContext(timeout=cfg.scheduler.tick_timeout_seconds))
    agg = report.aggregate()
    typer.echo(f"cardsync sync-due summary: subscriptions={len(report.results)} {_summary(agg)}")
    if report.error is not None:
        typer.echo(f"stopped early: {report.error}", err=True)
    raise typer.Exit(code=0 if agg["errors"] == 0 and report.error is None else 2)


@app.command(help="Show the sync log of a subscription, newest first.")
def logs(
    subscription_id: str = typer.Argument(..., help="Subscription id."),
    vault: str = typer.Option(..., "--vault", help="Vault owning the subscription."),
    page: int = typer.Option(1, "--page"),
    per_page: int = typer.Option(15, "--per-page"),
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, verbose)
    try:
        items, meta = _service(cfg).get_sync_logs(subscription_id, vault, page, per_page)
    except SyncError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=3) from exc
    for entry in items:
        when = entry.created_at.isoformat() if entry.created_at else ""
        line = f"{when}\t{entry.action}\t{entry.contact_id or '-'}\t{entry.distant_uri}"
        if entry.error_message:
            line += f"\t{entry.error_message}"
        typer.echo(line)
    typer.echo(f"page {meta.page}/{meta.total_pages} ({meta.total} entries)")
    raise typer.Exit(code=0)


@app.command(help="Run the scheduler loop until SIGINT/SIGTERM.")
def run(
    config: Path | None = _CONFIG_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    cfg = _load(config, verbose)
    lock_path = cfg.runtime.lock_path
    log.info("acquiring-lock %s", lock_path)
    try:
        lock = FileLock(lock_path)
        lock.acquire()
    except (RuntimeError, OSError) as exc:
        log.error("lock-failed %s", exc)
        raise typer.Exit(code=3) from exc

    try:
        scheduler = Scheduler(
            _service(cfg),
            interval_seconds=cfg.scheduler.interval_seconds,
            tick_timeout_seconds=cfg.scheduler.tick_timeout_seconds,
        )

        def _stop(signum: int, _frame: object) -> None:
            log.info("scheduler-signal signal=%s", signum)
            scheduler.stop()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        scheduler.run_forever()
    finally:
        lock.release()
    raise typer.Exit(code=0)


if __name__ == "__main__":  # pragma: no cover
    app()
