from __future__ import annotations

from typing import Any, Dict, List

from ..composer.step import create_step
from ..context import StepContext
from ..errors import NotFoundError


def _missing_ids(requested: Any, found: List[Dict[str, Any]]) -> List[Any]:
    ids = requested if isinstance(requested, (list, tuple, set)) else [requested]
    present = {row.get("id") for row in found}
    return [i for i in ids if i not in present]


@create_step("use-remote-query", compensable=False)
async def use_remote_query_step(data: Dict[str, Any], context: StepContext) -> Any:
    """Run a remote query.

    ``data`` holds ``entry_point``, ``fields``, ``variables`` and optionally
    ``list`` and ``throw_if_key_not_found``. With the latter set, every id
    requested through ``variables["id"]`` must come back or a
    :class:`~ledgerflow.errors.NotFoundError` is raised.
    """
    entry_point = data["entry_point"]
    variables = data.get("variables") or {}
    as_list = data.get("list", True)
    check_keys = bool(data.get("throw_if_key_not_found")) and "id" in variables
    fields = data.get("fields")
    if check_keys and fields and "id" not in fields:
        fields = [*fields, "id"]
    rows = await context.query.query(entry_point, fields, variables, list=True)

    if check_keys:
        missing = _missing_ids(variables["id"], rows)
        if missing:
            raise NotFoundError(
                f"{entry_point} with id {', '.join(map(str, missing))} was not found",
                step_id=context.step_id,
            )
    if as_list:
        return rows
    return rows[0] if rows else None
