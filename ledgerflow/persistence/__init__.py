"""Execution log backends for ledgerflow transactions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LedgerflowConfig, load_config
from .inmemory import InMemoryExecutionLog
from .log import ExecutionLog
from .models import StepRecord, TransactionRecord
from .sqlite import SQLiteExecutionLog

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresExecutionLog
except ImportError:  # pragma: no cover - optional dependency
    PostgresExecutionLog = None  # type: ignore

_log_instance: ExecutionLog | None = None
_log_url: Optional[str] = None


def get_execution_log(
    database_url: Optional[str] = None, config: Optional[LedgerflowConfig] = None
) -> ExecutionLog:
    """Factory function to obtain an execution log.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``LEDGERFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory log is returned.
    """

    global _log_instance, _log_url
    if _log_instance is not None and database_url is None and config is None:
        return _log_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("LEDGERFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )
    if _log_instance is not None and database_url == _log_url:
        return _log_instance

    if not database_url:
        _log_instance, _log_url = InMemoryExecutionLog(), None
        return _log_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _log_instance = SQLiteExecutionLog(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresExecutionLog is None:
            raise RuntimeError("Postgres support not available")
        _log_instance = PostgresExecutionLog(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    _log_url = database_url
    return _log_instance


def set_execution_log(log: ExecutionLog | None, database_url: Optional[str] = None) -> None:
    """Replace the cached log returned by :func:`get_execution_log`."""
    global _log_instance, _log_url
    _log_instance = log
    _log_url = database_url


__all__ = [
    "StepRecord",
    "TransactionRecord",
    "ExecutionLog",
    "SQLiteExecutionLog",
    "PostgresExecutionLog",
    "InMemoryExecutionLog",
    "get_execution_log",
    "set_execution_log",
]
