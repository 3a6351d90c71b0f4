"""Conversions between protobuf ``Struct``/``Value`` messages and plain JSON data."""

from __future__ import annotations

import json
import math
from typing import Any

from google.protobuf.struct_pb2 import NULL_VALUE, ListValue, Struct, Value


def struct_to_json(proto_struct: Struct) -> dict[str, Any]:
    """Convert a ``Struct`` into a dict whose keys are in sorted order."""
    return {
        key: value_to_json(proto_struct.fields[key])
        for key in sorted(proto_struct.fields)
    }


def value_to_json(proto_value: Value) -> Any:
    """Convert a ``Value`` into the matching JSON-compatible Python object.

    An unset value becomes ``None``; a non-finite number becomes ``0``.
    """
    kind = proto_value.WhichOneof("kind")
    if kind is None or kind == "null_value":
        return None
    if kind == "bool_value":
        return proto_value.bool_value
    if kind == "number_value":
        number = proto_value.number_value
        return number if math.isfinite(number) else 0
    if kind == "string_value":
        return proto_value.string_value
    if kind == "list_value":
        return [value_to_json(item) for item in proto_value.list_value.values]
    return struct_to_json(proto_value.struct_value)


def string_to_struct(json_string: str | bytes) -> Struct:
    """Parse a JSON document into a ``Struct``.

    Raises ``ValueError`` when the text is not valid JSON. A document whose
    top level is not an object gives an empty ``Struct``.
    """
    return json_to_struct(json.loads(json_string))


def json_to_struct(json_value: Any) -> Struct:
    """Convert a JSON object into a ``Struct``; anything else gives an empty one."""
    result = Struct()
    if isinstance(json_value, dict):
        for key, value in json_value.items():
            result.fields[key].CopyFrom(json_value_to_value(value))
    return result


def json_value_to_value(json_value: Any) -> Value:
    """Convert a JSON-compatible Python object into a ``Value``."""
    if json_value is None:
        return Value(null_value=NULL_VALUE)
    if isinstance(json_value, bool):
        return Value(bool_value=json_value)
    if isinstance(json_value, (int, float)):
        return Value(number_value=float(json_value))
    if isinstance(json_value, str):
        return Value(string_value=json_value)
    if isinstance(json_value, (list, tuple)):
        items = ListValue()
        for item in json_value:
            items.values.add().CopyFrom(json_value_to_value(item))
        return Value(list_value=items)
    if isinstance(json_value, dict):
        result = Value()
        result.struct_value.CopyFrom(json_to_struct(json_value))
        return result
    raise TypeError(f"cannot convert {type(json_value).__name__} to a protobuf Value")