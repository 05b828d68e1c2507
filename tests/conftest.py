import pytest

from ledgerflow.config import EngineConfig, LedgerflowConfig
from ledgerflow.engine import WorkflowEngine
from ledgerflow.persistence import set_execution_log
from ledgerflow.persistence.inmemory import InMemoryExecutionLog
from ledgerflow.registry import WorkflowRegistry


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep config files, env overrides and cached singletons out of tests."""
    for name in (
        "LEDGERFLOW_CONFIG",
        "LEDGERFLOW_DATABASE_URL",
        "DATABASE_URL",
        "LEDGERFLOW_TRANSPORT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    set_execution_log(None)
    yield
    set_execution_log(None)


@pytest.fixture
def config():
    return LedgerflowConfig(engine=EngineConfig(default_retry_backoff=0.0, default_jitter=0.0))


@pytest.fixture
def registry():
    registry = WorkflowRegistry()
    yield registry
    registry.clear()


@pytest.fixture
def log():
    return InMemoryExecutionLog()


@pytest.fixture
def engine(registry, log, config):
    return WorkflowEngine(registry, log, config=config)
