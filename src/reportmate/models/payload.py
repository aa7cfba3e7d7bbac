"""
JSON value typing for collected payloads.

Module results, cached blobs and transmitted bodies are arbitrary JSON
documents. They are typed as ``JSONValue`` and checked with
``ensure_json_value`` before they are written or sent, so encoding never
fails half way through.
"""

import math
from typing import Any, Dict, List, Union

JSONScalar = Union[None, bool, int, float, str]
JSONValue = Union[JSONScalar, List["JSONValue"], Dict[str, "JSONValue"]]
JSONObject = Dict[str, JSONValue]


def ensure_json_value(value: Any, path: str = "$") -> JSONValue:
    """
    Check that a value is a JSON document and return a normalized copy.

    Tuples are converted to lists. Non-finite floats, non-string keys and any
    other type raise ``TypeError`` naming the offending location.

    Args:
        value: Candidate JSON value
        path: Location used in error messages

    Returns:
        The normalized value

    Raises:
        TypeError: If any nested value is not representable as JSON
    """
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError(f"{path}: non-finite number {value!r} is not valid JSON")
        return value
    if isinstance(value, (list, tuple)):
        return [ensure_json_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, dict):
        normalized: Dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: object key {key!r} is not a string")
            normalized[key] = ensure_json_value(item, f"{path}.{key}")
        return normalized
    raise TypeError(f"{path}: {type(value).__name__} is not a JSON type")


def ensure_json_object(value: Any, path: str = "$") -> JSONObject:
    """Like ``ensure_json_value`` but require a top-level object."""
    if not isinstance(value, dict):
        raise TypeError(f"{path}: expected a JSON object, got {type(value).__name__}")
    return ensure_json_value(value, path)
