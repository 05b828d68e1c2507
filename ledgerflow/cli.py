"""Command line interface for operating ledgerflow transactions."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import timedelta
from typing import NoReturn, Optional

import typer

from .api import create_app
from .cli_utils.registry import load_registry
from .config import LedgerflowConfig, load_config
from .db import EntityStore
from .engine import WorkflowEngine
from .errors import WorkflowError
from .events import TransportEventBus
from .persistence import get_execution_log
from .transports import get_transport
from .worker import SignalConsumer

app = typer.Typer(help="CLI for ledgerflow workflows")

transaction_app = typer.Typer(help="Inspect and operate on transactions")
app.add_typer(transaction_app, name="transaction")

REGISTRY_OPTION = typer.Option(
    ..., "--registry", "-r", help="Workflow registry as 'module:attribute'"
)


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Python logging level"),
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to config.yaml (defaults to LEDGERFLOW_CONFIG)"
    ),
) -> None:
    """ledgerflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config:
        os.environ["LEDGERFLOW_CONFIG"] = config


def _engine(registry: str) -> WorkflowEngine:
    try:
        loaded = load_registry(registry)
    except (ImportError, ValueError) as exc:
        typer.secho(f"Cannot load registry: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    config = load_config()
    return WorkflowEngine(loaded, config=config, services=_services(config))


def _services(config: LedgerflowConfig) -> dict:
    """Collaborators handed to steps of engines started from the CLI."""
    services: dict = {"events": TransportEventBus(get_transport(config=config))}
    if config.entities_url:
        services["entities"] = EntityStore(config.entities_url)
    return services


def _fail(exc: WorkflowError) -> NoReturn:
    typer.secho(f"{type(exc).__name__}: {exc.message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@transaction_app.command("list")
def transaction_list(
    pending: bool = typer.Option(False, "--pending", help="Only non-terminal transactions"),
) -> None:
    """
    List transactions recorded in the execution log.

    Example:
        ledgerflow transaction list
        # Output: 6f1c...    create-cart    done
    """
    log = get_execution_log()
    records = asyncio.run(log.list_pending() if pending else log.list_transactions())
    if not records:
        typer.echo("No transactions found")
        return
    for record in records:
        flag = "\tFROZEN" if record.frozen else ""
        typer.echo(
            f"{record.transaction_id}\t{record.workflow_id}\t{record.status.value}{flag}"
        )


@transaction_app.command("show")
def transaction_show(transaction_id: str) -> None:
    """Show status, error and step history of one transaction."""
    log = get_execution_log()
    record = asyncio.run(log.get_transaction(transaction_id))
    if record is None:
        typer.echo("Transaction not found")
        raise typer.Exit(code=1)
    typer.echo(f"Transaction {record.transaction_id} ({record.workflow_id}): {record.status.value}")
    if record.frozen:
        typer.secho("Frozen: operator attention required", fg=typer.colors.RED)
    if record.error:
        typer.echo(f"Error: {record.error.type}: {record.error.message}")
    for step in asyncio.run(log.load(transaction_id)):
        line = f"- {step.step_id} [{step.action.value}]: {step.status.value}"
        if step.attempts:
            line += f" (attempts: {step.attempts})"
        if step.error:
            line += f" - {step.error.message}"
        typer.echo(line)
    for hook_error in record.hook_errors:
        typer.echo(f"Hook {hook_error.step_id} failed: {hook_error.message}")


@transaction_app.command("resume")
def transaction_resume(transaction_id: str, registry: str = REGISTRY_OPTION) -> None:
    """Continue a transaction from its execution log."""
    engine = _engine(registry)
    try:
        report = asyncio.run(engine.resume(transaction_id))
    except WorkflowError as exc:
        _fail(exc)
    typer.echo(f"Transaction {transaction_id}: {report.status.value}")


@transaction_app.command("cancel")
def transaction_cancel(transaction_id: str, registry: str = REGISTRY_OPTION) -> None:
    """Abort a transaction and compensate its completed steps."""
    engine = _engine(registry)
    try:
        report = asyncio.run(engine.cancel(transaction_id))
    except WorkflowError as exc:
        _fail(exc)
    typer.echo(f"Transaction {transaction_id}: {report.status.value}")
    for outcome in report.compensations:
        typer.echo(f"- {outcome.step_id}: {outcome.status.value}")


@app.command("recover")
def recover(registry: str = REGISTRY_OPTION) -> None:
    """Resume every unfinished transaction, e.g. after a crash."""
    engine = _engine(registry)
    reports = asyncio.run(engine.recover())
    if not reports:
        typer.echo("Nothing to recover")
        return
    for report in reports:
        typer.echo(f"{report.transaction_id}\t{report.status.value}")


@app.command("purge")
def purge(
    older_than: Optional[float] = typer.Option(
        None, "--older-than", help="Seconds since completion; defaults to engine.retention_seconds"
    ),
) -> None:
    """Delete finished transactions from the execution log."""
    config = load_config()
    seconds = older_than if older_than is not None else config.engine.retention_seconds
    if seconds is None:
        typer.echo("No retention configured; pass --older-than")
        raise typer.Exit(code=1)
    removed = asyncio.run(get_execution_log().purge_finished(timedelta(seconds=seconds)))
    typer.echo(f"Purged {removed} transaction(s)")


@app.command("serve")
def serve(
    registry: str = REGISTRY_OPTION,
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
) -> None:
    """Serve the step signalling HTTP API."""
    import uvicorn

    engine = _engine(registry)
    uvicorn.run(create_app(engine), host=host, port=port)


@app.command("worker")
def worker(
    registry: str = REGISTRY_OPTION,
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to consume before exiting (default: forever)"
    ),
) -> None:
    """
    Consume step signals from the configured transport.

    Example:
        LEDGERFLOW_TRANSPORT=redis ledgerflow worker -r shop.workflows:registry
    """
    engine = _engine(registry)
    consumer = SignalConsumer(engine, get_transport())
    typer.echo("Starting signal worker")
    asyncio.run(consumer.start(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
