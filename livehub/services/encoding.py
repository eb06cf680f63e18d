"""JSON encoding for opaque hub elements (SSE, Redis, SQL payloads)."""
import dataclasses
import json
from typing import Any


def _default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def serialize_element(element: Any) -> str:
    """JSON-serialise an element; datetimes become ISO strings, unknown types str()."""
    return json.dumps(element, default=_default)


def to_jsonable(element: Any) -> Any:
    return json.loads(serialize_element(element))
