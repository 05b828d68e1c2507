"""Read-only cross-module data access used by workflow steps."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from .errors import NotFoundError

Resolver = Callable[[Dict[str, Any]], Any]


class RemoteQuery(Protocol):
    """Fetch records of ``entry_point`` matching ``variables``, projected to ``fields``."""

    async def query(
        self,
        entry_point: str,
        fields: Optional[Sequence[str]] = None,
        variables: Optional[Dict[str, Any]] = None,
        *,
        list: bool = True,
    ) -> Any:
        ...


def select_fields(record: Dict[str, Any], fields: Optional[Sequence[str]]) -> Dict[str, Any]:
    """Project ``record`` onto dotted field paths; ``*`` keeps a whole level."""
    if not fields or "*" in fields:
        return dict(record)
    selected: Dict[str, Any] = {}
    nested: Dict[str, List[str]] = {}
    for path in fields:
        head, _, rest = path.partition(".")
        if rest:
            nested.setdefault(head, []).append(rest)
        elif head in record:
            selected[head] = record[head]
    for head, paths in nested.items():
        value = record.get(head)
        if isinstance(value, dict):
            selected[head] = select_fields(value, paths)
        elif isinstance(value, list):
            selected[head] = [
                select_fields(item, paths) if isinstance(item, dict) else item for item in value
            ]
    return selected


def _matches(record: Dict[str, Any], variables: Dict[str, Any]) -> bool:
    for key, expected in variables.items():
        if key not in record:
            continue
        if isinstance(expected, (list, tuple, set)):
            if record[key] not in expected:
                return False
        elif record[key] != expected:
            return False
    return True


class InMemoryRemoteQuery:
    """Serves queries from registered record lists or resolver callables.

    Variables naming a record field filter on it; other variables are only
    visible to resolvers.
    """

    def __init__(self) -> None:
        self._resolvers: Dict[str, Resolver] = {}

    def register(self, entry_point: str, resolver: Resolver) -> None:
        self._resolvers[entry_point] = resolver

    def register_records(self, entry_point: str, records: Iterable[Dict[str, Any]]) -> None:
        rows = [dict(r) for r in records]
        self._resolvers[entry_point] = lambda variables: rows

    async def query(
        self,
        entry_point: str,
        fields: Optional[Sequence[str]] = None,
        variables: Optional[Dict[str, Any]] = None,
        *,
        list: bool = True,
    ) -> Any:
        resolver = self._resolvers.get(entry_point)
        if resolver is None:
            raise NotFoundError(f"Unknown query entry point '{entry_point}'")
        variables = dict(variables or {})
        rows = resolver(variables)
        if inspect.isawaitable(rows):
            rows = await rows
        found = [select_fields(r, fields) for r in rows if _matches(r, variables)]
        if list:
            return found
        return found[0] if found else None
