"""
JSON utilities for storing structured values as graph properties.
"""

import json
from typing import Any, Optional


def to_json_property(value: Any) -> str:
    """Serialize a value for storage in a scalar graph property.

    Args:
        value: JSON-compatible value

    Returns:
        Compact JSON string with stable key order
    """
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(',', ':'))


def from_json_property(raw: Optional[Any], default: Any = None) -> Any:
    """Deserialize a graph property written by :func:`to_json_property`.

    Values that are already decoded are returned as-is, so properties written by
    older tooling as native lists or maps are still readable.

    Args:
        raw: Stored property value
        default: Value returned when the property is missing or not valid JSON

    Returns:
        Decoded value or default
    """
    if raw is None:
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default
