"""Typed serialization of step values for durable execution logs."""

import importlib
from typing import Any, Optional

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

_PLAIN_TYPES = (str, int, float, bool, list, dict, tuple)


class ValueSerializer:
    """
    Serialize a step value for storage next to its type metadata.

    Returns:
        Dict of ``{"data": ..., "type": ..., "module": ...}`` or ``None``.
    """

    @staticmethod
    def serialize(value: Any) -> Optional[dict]:
        if value is None:
            return None

        value_type = type(value).__name__
        value_module = type(value).__module__

        if isinstance(value, _PLAIN_TYPES):
            return {"data": to_jsonable_python(value), "type": "json", "module": None}

        if isinstance(value, BaseModel):
            try:
                return {
                    "data": value.model_dump(mode="json"),
                    "type": value_type,
                    "module": value_module,
                }
            except Exception as e:
                raise ValueError(f"Failed to serialize Pydantic model {value_type}: {e}")

        try:
            return {
                "data": to_jsonable_python(value),
                "type": "json",
                "module": None,
            }
        except Exception as e:
            raise ValueError(
                f"Cannot serialize value of type '{value_type}' from module '{value_module}': {e}"
            )


class ValueDeserializer:
    """
    Reconstruct a value written by :class:`ValueSerializer`.

    Supports:
    - Plain JSON values
    - Pydantic models, located by type and module
    """

    @staticmethod
    def deserialize(stored: Optional[dict]) -> Any:
        if stored is None:
            return None

        value_type = stored.get("type")
        value_module = stored.get("module")
        data = stored.get("data")

        if value_type == "json" or not value_module:
            return data

        try:
            module = importlib.import_module(value_module)
            value_class = getattr(module, value_type)
        except (ImportError, AttributeError) as e:
            raise ValueError(
                f"Failed to reconstruct value '{value_type}' from module '{value_module}': {e}"
            )

        if isinstance(value_class, type) and issubclass(value_class, BaseModel):
            return value_class.model_validate(data)
        return data
