import asyncio
import textwrap

import pytest
from typer.testing import CliRunner

from ledgerflow.cli import app
from ledgerflow.cli_utils.registry import load_registry
from ledgerflow.config import EngineConfig, LedgerflowConfig
from ledgerflow.engine import WorkflowEngine
from ledgerflow.persistence import SQLiteExecutionLog

REGISTRY_MODULE = textwrap.dedent(
    """
    from ledgerflow import WorkflowRegistry, create_step, create_workflow


    def reserve(data, context):
        return {"reservation_id": "res-" + data["sku"]}


    def release(reservation, context):
        return None


    reserve_step = create_step("reserve", reserve, release)
    approve_step = create_step("approve", lambda data, context: None, async_=True)


    @create_workflow("order")
    def order(input):
        reservation = reserve_step({"sku": input.sku})
        approve_step({"reservation": reservation.reservation_id})
        return reservation


    registry = WorkflowRegistry()
    registry.register_workflow(order)
    """
)

runner = CliRunner()


@pytest.fixture
def database(tmp_path, monkeypatch):
    (tmp_path / "cli_registry.py").write_text(REGISTRY_MODULE)
    path = tmp_path / "ledger.db"
    monkeypatch.setenv("LEDGERFLOW_DATABASE_URL", f"sqlite://{path}")
    return path


def _start_order(database, transaction_id):
    engine = WorkflowEngine(
        load_registry("cli_registry:registry"),
        SQLiteExecutionLog(database),
        config=LedgerflowConfig(engine=EngineConfig(default_retry_backoff=0.0)),
    )
    return asyncio.run(engine.run("order", {"sku": "a"}, transaction_id=transaction_id))


def test_list_without_transactions(database):
    result = runner.invoke(app, ["transaction", "list"])
    assert result.exit_code == 0
    assert "No transactions found" in result.stdout


def test_list_and_show(database):
    _start_order(database, "tx-1")

    listed = runner.invoke(app, ["transaction", "list", "--pending"])
    shown = runner.invoke(app, ["transaction", "show", "tx-1"])

    assert listed.exit_code == 0
    assert "tx-1\torder\tinvoking" in listed.stdout
    assert shown.exit_code == 0
    assert "Transaction tx-1 (order): invoking" in shown.stdout
    assert "- reserve [invoke]: success (attempts: 1)" in shown.stdout
    assert "- approve [invoke]: waiting" in shown.stdout


def test_show_unknown_transaction(database):
    result = runner.invoke(app, ["transaction", "show", "missing"])
    assert result.exit_code == 1
    assert "Transaction not found" in result.stdout


def test_cancel_compensates(database):
    _start_order(database, "tx-2")

    result = runner.invoke(app, ["transaction", "cancel", "tx-2", "-r", "cli_registry:registry"])

    assert result.exit_code == 0
    assert "Transaction tx-2: reverted" in result.stdout
    assert "- reserve: compensated" in result.stdout

    again = runner.invoke(app, ["transaction", "cancel", "tx-2", "-r", "cli_registry:registry"])
    assert again.exit_code == 1
    assert "InvalidSignalError" in again.stdout


def test_recover_resumes_pending(database):
    _start_order(database, "tx-3")

    result = runner.invoke(app, ["recover", "-r", "cli_registry:registry"])

    assert result.exit_code == 0
    assert "tx-3\tinvoking" in result.stdout


def test_bad_registry_and_missing_retention(database):
    bad = runner.invoke(app, ["recover", "-r", "no_such_module:registry"])
    purge = runner.invoke(app, ["purge"])
    purged = runner.invoke(app, ["purge", "--older-than", "0"])

    assert bad.exit_code == 1
    assert "Cannot load registry" in bad.stdout
    assert purge.exit_code == 1
    assert purged.exit_code == 0
    assert "Purged 0 transaction(s)" in purged.stdout
