"""Import helpers for CLI commands that need workflow definitions."""

from __future__ import annotations

import importlib
import sys
from pathlib import Path

from ..registry import WorkflowRegistry


def load_registry(target: str) -> WorkflowRegistry:
    """Resolve ``module:attribute`` to a :class:`WorkflowRegistry`.

    The attribute may be the registry itself or a zero-argument factory
    returning one. The current directory is importable so project modules
    resolve without installation.
    """
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got '{target}'")

    cwd = str(Path.cwd())
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    module = importlib.import_module(module_name)
    try:
        value = getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attribute}'") from None

    if callable(value) and not isinstance(value, WorkflowRegistry):
        value = value()
    if not isinstance(value, WorkflowRegistry):
        raise ValueError(f"'{target}' is not a WorkflowRegistry")
    return value
