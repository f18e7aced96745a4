"""Flatten OTLP attribute lists into string-keyed, string-valued maps.

Stringification policy (downstream code re-parses these strings, so it must
stay stable):

* ``stringValue``  -> verbatim
* ``intValue``     -> decimal integer (OTLP JSON sends int64 as a string)
* ``doubleValue``  -> integral values without a fraction (``1.0 -> "1"``),
  everything else via ``repr`` (``0.5 -> "0.5"``)
* ``boolValue``    -> ``"true"`` / ``"false"``
* ``bytesValue``   -> the base64 text as received
* ``arrayValue``   -> compact JSON array of native values
* ``kvlistValue``  -> one dotted key per child (``parent.child``)
* no value         -> ``""`` so the key is never silently dropped

Plain nested dicts (already-decoded attribute trees) are accepted as well and
flattened with the same dotted-key convention.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, Iterable, List, Mapping

_SCALAR_KEYS = ("stringValue", "intValue", "doubleValue", "boolValue", "bytesValue")


def format_double(value: float) -> str:
    if math.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _format_native(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return format_double(value)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value), separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _container_values(container: Any) -> List[Any]:
    """Children of an ``arrayValue`` or ``kvlistValue``; a bare list is taken as the values."""
    if isinstance(container, list):
        return container
    if isinstance(container, Mapping) and isinstance(container.get("values"), list):
        return container["values"]
    return []


def any_value_to_native(value: Mapping[str, Any] | None) -> Any:
    """Decode an OTLP ``AnyValue`` into the equivalent Python value."""
    if not isinstance(value, Mapping):
        return value
    if "stringValue" in value:
        return value["stringValue"]
    if "intValue" in value:
        try:
            return int(value["intValue"])
        except (TypeError, ValueError):
            return value["intValue"]
    if "doubleValue" in value:
        try:
            return float(value["doubleValue"])
        except (TypeError, ValueError):
            return value["doubleValue"]
    if "boolValue" in value:
        return bool(value["boolValue"])
    if "bytesValue" in value:
        return value["bytesValue"]
    if "arrayValue" in value:
        return [any_value_to_native(item) for item in _container_values(value["arrayValue"])]
    if "kvlistValue" in value:
        return {
            entry["key"]: any_value_to_native(entry.get("value"))
            for entry in _container_values(value["kvlistValue"])
            if isinstance(entry, Mapping) and isinstance(entry.get("key"), str) and entry["key"]
        }
    return None


def _stringify_any_value(value: Mapping[str, Any]) -> str:
    if "stringValue" in value:
        return str(value["stringValue"])
    if "intValue" in value:
        return _format_native(any_value_to_native(value))
    if "doubleValue" in value:
        return _format_native(any_value_to_native(value))
    if "boolValue" in value:
        return _format_native(bool(value["boolValue"]))
    if "bytesValue" in value:
        return str(value["bytesValue"])
    if "arrayValue" in value:
        return json.dumps(
            any_value_to_native(value), separators=(",", ":"), ensure_ascii=False, default=str
        )
    return ""


def _flatten_into(result: Dict[str, str], key: str, value: Any) -> None:
    if isinstance(value, Mapping) and "kvlistValue" in value:
        children = _container_values(value["kvlistValue"])
        if not children:
            result[key] = ""
        for child in children:
            if isinstance(child, Mapping) and child.get("key"):
                _flatten_into(result, f"{key}.{child['key']}", child.get("value"))
        return
    if isinstance(value, Mapping) and any(k in value for k in (*_SCALAR_KEYS, "arrayValue")):
        result[key] = _stringify_any_value(value)
        return
    if isinstance(value, Mapping):
        if not value:
            result[key] = ""
        for child_key, child_value in value.items():
            _flatten_into(result, f"{key}.{child_key}", child_value)
        return
    result[key] = _format_native(value)


def flatten_attributes(attributes: Iterable[Any] | Mapping[str, Any] | None) -> Dict[str, str]:
    """Convert OTLP ``[{key, value}]`` (or a nested dict) into a flat string map."""
    result: Dict[str, str] = {}
    if attributes is None:
        return result
    if isinstance(attributes, Mapping):
        for key, value in attributes.items():
            _flatten_into(result, str(key), value)
        return result
    if not isinstance(attributes, (list, tuple)):
        return result
    for entry in attributes:
        if not isinstance(entry, Mapping):
            continue
        key = entry.get("key")
        if not key:
            continue
        _flatten_into(result, str(key), entry.get("value"))
    return result


def parse_count(value: str | None) -> int:
    """Parse a stringified token count; anything unusable counts as zero."""
    if value is None:
        return 0
    text = str(value).strip()
    if not text:
        return 0
    try:
        number = float(text)
    except ValueError:
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(number)


INPUT_TOKEN_KEYS = ("gen_ai.usage.input_tokens", "gen_ai.usage.prompt_tokens")
OUTPUT_TOKEN_KEYS = ("gen_ai.usage.output_tokens", "gen_ai.usage.completion_tokens")


def token_count(attributes: Mapping[str, str], keys: Iterable[str]) -> int:
    """Parse the first non-empty token attribute among ``keys``."""
    for key in keys:
        value = attributes.get(key)
        if value not in (None, ""):
            return parse_count(value)
    return 0


def input_tokens(attributes: Mapping[str, str]) -> int:
    return token_count(attributes, INPUT_TOKEN_KEYS)


def output_tokens(attributes: Mapping[str, str]) -> int:
    return token_count(attributes, OUTPUT_TOKEN_KEYS)


__all__ = [
    "any_value_to_native",
    "flatten_attributes",
    "format_double",
    "input_tokens",
    "output_tokens",
    "parse_count",
    "token_count",
]
