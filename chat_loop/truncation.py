"""Bounded previews of large values.

``truncate_value`` caps string length, list length and mapping size while
recursing up to ``max_depth``. Values already within every cap come back
unchanged.
"""

import json
import math
from typing import Any, Optional

MAX_STRING_LENGTH = 1000
MAX_ITEMS = 20
MAX_KEYS = 20
MAX_DEPTH = 4

MORE_KEYS_MARKER = "..."


def truncate_value(
    value: Any,
    max_string_length: int = MAX_STRING_LENGTH,
    max_items: int = MAX_ITEMS,
    max_keys: int = MAX_KEYS,
    max_depth: int = MAX_DEPTH,
) -> Any:
    return _truncate(value, max_string_length, max_items, max_keys, max_depth, 0)


def _truncate(value, max_string_length, max_items, max_keys, max_depth, depth):
    if isinstance(value, str):
        if len(value) <= max_string_length:
            return value
        hidden = len(value) - max_string_length
        return f"{value[:max_string_length]}... [{hidden} more chars]"

    if isinstance(value, (list, tuple, dict)) and depth >= max_depth:
        # Past the depth limit only short containers survive intact.
        if _json_length(value) <= max_string_length:
            return value
        return summarize_value(value)

    if isinstance(value, (list, tuple)):
        items = [
            _truncate(item, max_string_length, max_items, max_keys, max_depth, depth + 1)
            for item in value[:max_items]
        ]
        if len(value) > max_items:
            items.append(f"... [{len(value) - max_items} more items]")
            return items
        return items if isinstance(value, list) else type(value)(items)

    if isinstance(value, dict):
        keys = list(value.keys())
        result = {
            key: _truncate(
                value[key], max_string_length, max_items, max_keys, max_depth, depth + 1
            )
            for key in keys[:max_keys]
        }
        if len(keys) > max_keys:
            result[MORE_KEYS_MARKER] = f"[{len(keys) - max_keys} more keys]"
        return result

    return value


def _json_length(value: Any) -> int:
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return math.inf


def json_size(value: Any) -> int:
    """UTF-8 byte size of the JSON serialization."""
    return len(json.dumps(value, default=str).encode("utf-8"))


def data_type_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def format_bytes(size: int) -> str:
    """Human readable size, e.g. ``1.5 KB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / math.pow(1024, i), 2):g} {units[i]}"


def summarize_value(value: Any, size: Optional[int] = None) -> str:
    suffix = f", {format_bytes(size)}" if size is not None else ""
    if isinstance(value, (list, tuple)):
        return f"[Array with {len(value)} items{suffix}]"
    if isinstance(value, str):
        return f"[String with {len(value)} characters{suffix}]"
    if isinstance(value, dict):
        return f"[Object with {len(value)} keys{suffix}]"
    return f"[{data_type_of(value)}{suffix}]"
