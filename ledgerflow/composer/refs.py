"""Placeholders for values that only exist once a transaction runs."""

from __future__ import annotations

from typing import Any, Hashable, Iterator, Mapping, Tuple


class _Absent:
    """Marker for outputs of nodes skipped by a false conditional.

    Falsy, and any attribute or item lookup on it yields the marker again, so
    downstream transforms can test for it instead of tripping over ``None``.
    """

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __len__(self) -> int:
        return 0

    def __iter__(self) -> Iterator[Any]:
        return iter(())

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__"):
            raise AttributeError(name)
        return self

    def __getitem__(self, key: Any) -> "_Absent":
        return self

    def __repr__(self) -> str:
        return "ABSENT"

    def __reduce__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


def is_absent(value: Any) -> bool:
    return value is ABSENT


class Ref:
    """Reference to the (future) output of a node, optionally narrowed by a path.

    ``cart.id`` and ``cart["items"][0]`` build new references; the actual
    lookup happens when the engine resolves node inputs.
    """

    __slots__ = ("node_id", "path")

    def __init__(self, node_id: str, path: Tuple[Hashable, ...] = ()) -> None:
        object.__setattr__(self, "node_id", node_id)
        object.__setattr__(self, "path", tuple(path))

    def __getattr__(self, name: str) -> "Ref":
        if name.startswith("_"):
            raise AttributeError(name)
        return Ref(self.node_id, self.path + (name,))

    def __getitem__(self, key: Hashable) -> "Ref":
        return Ref(self.node_id, self.path + (key,))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Ref is immutable")

    def __iter__(self) -> Iterator[Any]:
        raise TypeError(
            f"Output of '{self.node_id}' is not available while the workflow is "
            "being composed; reshape it inside transform()"
        )

    def __bool__(self) -> bool:
        raise TypeError(
            f"Output of '{self.node_id}' has no truth value while the workflow is "
            "being composed; branch with when()"
        )

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Ref)
            and other.node_id == self.node_id
            and other.path == self.path
        )

    def __hash__(self) -> int:
        return hash((self.node_id, self.path))

    def __repr__(self) -> str:
        suffix = "".join(f"[{p!r}]" for p in self.path)
        return f"Ref({self.node_id}){suffix}"


def _step_into(value: Any, key: Hashable) -> Any:
    if value is ABSENT or value is None:
        return value
    if isinstance(value, Mapping):
        return value.get(key)
    if isinstance(value, (list, tuple)) and isinstance(key, int):
        return value[key] if -len(value) <= key < len(value) else None
    if isinstance(key, str):
        return getattr(value, key, None)
    return None


def resolve(value: Any, outputs: Mapping[str, Any]) -> Any:
    """Replace every ``Ref`` nested in ``value`` by the output it points at."""
    if isinstance(value, Ref):
        current = outputs.get(value.node_id, ABSENT)
        for key in value.path:
            current = _step_into(current, key)
        return current
    if isinstance(value, dict):
        return {k: resolve(v, outputs) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, outputs) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve(v, outputs) for v in value)
    return value


def collect_refs(value: Any) -> Iterator[Ref]:
    """Yield every ``Ref`` nested in dicts, lists and tuples."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from collect_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from collect_refs(v)


def strip_absent(value: Any) -> Any:
    """Turn ``ABSENT`` into ``None`` so results can be serialized."""
    if value is ABSENT:
        return None
    if isinstance(value, dict):
        return {k: strip_absent(v) for k, v in value.items()}
    if isinstance(value, list):
        return [strip_absent(v) for v in value]
    if isinstance(value, tuple):
        return tuple(strip_absent(v) for v in value)
    return value
