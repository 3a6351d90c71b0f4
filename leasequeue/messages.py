"""Request and response messages exchanged between workers, clients and the controller."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, TypeVar

from google.protobuf.struct_pb2 import Struct

from leasequeue.util import json_to_struct, struct_to_json

_STRUCT = {"struct": True}


def _item_field() -> Any:
    return field(default=None, metadata=_STRUCT)


@dataclass
class AddJobRequest:
    """A request to enqueue a one-off or periodic job."""

    queue_name: str = ""
    item: Struct | None = _item_field()
    is_periodic: bool = False
    lease_time: int = 0
    start_time: int = 0
    end_time: int = 0
    interval: int = 0

    def get_item_string(self) -> str:
        """Return the item as compact JSON, or an empty string when there is none."""
        if self.item is None:
            return ""
        return json.dumps(
            struct_to_json(self.item), separators=(",", ":"), ensure_ascii=False
        )


@dataclass
class ListenRequest:
    """A worker's request to receive jobs from a queue."""

    queue_name: str = ""


@dataclass
class JobStreamResponse:
    """A job handed to a listening worker."""

    queue_name: str = ""
    task_id: str = ""
    item: Struct | None = _item_field()


@dataclass
class JobCompleteResponse:
    """A worker's report that a job is done."""

    queue_name: str = ""
    task_id: str = ""
    result: str = ""


@dataclass
class SuccessResponse:
    """A plain success flag."""

    success: bool = False


_MESSAGE_TYPES = (
    AddJobRequest,
    ListenRequest,
    JobStreamResponse,
    JobCompleteResponse,
    SuccessResponse,
)

M = TypeVar("M")


def encode_message(message: Any) -> bytes:
    """Serialize a message to UTF-8 JSON bytes."""
    if not isinstance(message, _MESSAGE_TYPES):
        raise TypeError(f"unsupported message type {type(message).__name__}")
    payload: dict[str, Any] = {}
    for message_field in dataclasses.fields(message):
        value = getattr(message, message_field.name)
        if message_field.metadata.get("struct") and value is not None:
            value = struct_to_json(value)
        payload[message_field.name] = value
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _check(name: str, value: Any, expected: type) -> Any:
    if expected is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, expected)
    if not valid:
        raise ValueError(f"field {name!r} must be of type {expected.__name__}")
    return value


def decode_message(message_type: type[M], data: bytes | str) -> M:
    """Deserialize bytes produced by :func:`encode_message` into ``message_type``.

    Missing fields take their defaults and unknown fields are ignored.
    """
    if message_type not in _MESSAGE_TYPES:
        raise TypeError(f"unsupported message type {message_type!r}")
    payload = json.loads(data)
    if not isinstance(payload, dict):
        raise ValueError("message must be a JSON object")
    values: dict[str, Any] = {}
    for message_field in dataclasses.fields(message_type):
        if message_field.name not in payload:
            continue
        raw = payload[message_field.name]
        if message_field.metadata.get("struct"):
            if raw is not None and not isinstance(raw, dict):
                raise ValueError(f"field {message_field.name!r} must be an object")
            values[message_field.name] = None if raw is None else json_to_struct(raw)
        else:
            values[message_field.name] = _check(
                message_field.name, raw, type(message_field.default)
            )
    return message_type(**values)