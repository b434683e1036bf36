"""
Admin CLI for StealthMax services.

Utilities:
  - derive NAME [--counter N] : print the derived address for a subname
  - names                     : list registered names and their settlement state
  - watch                     : run the chain watcher without the HTTP server
  - serve                     : run the HTTP API (uvicorn), watcher included

Usage:
  stealthmax <command> [options]
  python -m stealthmax_services.cli <command> [options]
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from .config import Settings
from .errors import ApiError
from .keys import derive
from .logging import get_logger, setup_logging

app = typer.Typer(add_completion=False, help="StealthMax Substream admin CLI")
log = get_logger(__name__)


def _cfg() -> Settings:
    return Settings()


def _fail(e: ApiError) -> None:
    typer.secho(f"{e.title()}: {e.message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command("derive")
def derive_cmd(
    name: str = typer.Argument(..., help="Subname (parameter) to derive for"),
    counter: Optional[int] = typer.Option(None, "--counter", "-c", min=0, help="Rotation counter; omit for the registration address"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
):
    """Print the address derived from PRIVATE_KEY for NAME (and COUNTER)."""
    cfg = _cfg()
    try:
        kp = derive(cfg.require_secret(), name, counter)
    except ApiError as e:
        _fail(e)
        return
    if as_json:
        typer.echo(json.dumps({"name": name, "counter": counter, "address": kp.address}))
    else:
        typer.echo(kp.address)


@app.command("names")
def names_cmd(as_json: bool = typer.Option(False, "--json", help="Print JSON")):
    """List registered names under MAIN_DOMAIN."""
    from .app import build_directory
    from .services.directory import record_from_entry

    cfg = _cfg()

    async def _run():
        directory, registry = build_directory(cfg)
        try:
            return await directory.list_entries()
        finally:
            await registry.close()

    try:
        entries = asyncio.run(_run())
    except ApiError as e:
        _fail(e)
        return

    rows = []
    for entry in entries:
        rec = record_from_entry(entry)
        rows.append(
            {
                "name": entry.name,
                "address": entry.address,
                "intmax_address": rec.settlement_address if rec else None,
                "counter": rec.counter if rec else None,
            }
        )
    if as_json:
        typer.echo(json.dumps({"domain": cfg.main_domain, "count": len(rows), "names": rows}, indent=2))
        return
    typer.echo(f"{len(rows)} name(s) under {cfg.main_domain}")
    for r in rows:
        settle = r["intmax_address"] or "not settleable"
        typer.echo(f"  {r['name']:<24} {r['address']}  counter={r['counter']}  -> {settle}")


@app.command("watch")
def watch_cmd():
    """Run the chain watcher and settlement loop until interrupted."""
    from .app import build_client_factory, build_directory, build_watcher
    from .keys import normalize_secret
    from .services.settlement import SettlementOrchestrator
    from .tasks.scheduler import SchedulerConfig, TaskScheduler

    cfg = _cfg()
    setup_logging(level=cfg.log_level, log_format=cfg.log_format)

    async def _run():
        secret = cfg.require_secret()
        normalize_secret(secret)
        directory, registry = build_directory(cfg)
        try:
            orchestrator = SettlementOrchestrator(
                directory, build_client_factory(cfg), secret, rotation_retries=cfg.rotation_retries
            )
            watcher = build_watcher(cfg, directory=directory, orchestrator=orchestrator)
            scheduler = TaskScheduler(watcher=watcher, config=SchedulerConfig(start_delay=0))
            await scheduler.run_until_stopped()
            return watcher.gave_up
        finally:
            await registry.close()

    try:
        gave_up = asyncio.run(_run())
    except ApiError as e:
        _fail(e)
        return
    if gave_up:
        raise typer.Exit(code=2)


@app.command("serve")
def serve_cmd(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: PORT)"),
):
    """Run the HTTP API with uvicorn."""
    from .main import main as run_main

    argv = []
    if host:
        argv += ["--host", host]
    if port:
        argv += ["--port", str(port)]
    run_main(argv)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
