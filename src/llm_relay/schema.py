"""Translate general JSON Schemas into the OpenAPI subset vendors accept."""

from __future__ import annotations

from typing import Any, Final

__all__ = ["sanitize_schema"]

# Keys that describe the schema document rather than the value.
_META_KEYS: Final[frozenset[str]] = frozenset({"$schema", "$id", "$comment"})

_SIGNED_FORMATS: Final[frozenset[str]] = frozenset({"int32", "int64"})


def _signed_format(fmt: str) -> str:
    if fmt in _SIGNED_FORMATS or not fmt.startswith("uint"):
        return fmt
    if "32" in fmt:
        return "int32"
    # uint8, uint16, uint64 and bare "uint" all fit in int64
    return "int64"


def _is_integer(value: dict[str, Any]) -> bool:
    kind = value.get("type")
    if isinstance(kind, list):
        return "integer" in kind
    return kind == "integer"


def sanitize_schema(schema: Any) -> Any:
    """
    Return a sanitized copy of *schema*; the input is never modified.

    - ``$schema``/``$id``/``$comment`` keys are dropped at every level.
    - Unsigned integer formats (``uint32``, ``uint64``…) become ``int32``/``int64``.

    Total over JSON values: anything that is not a dict or list is returned
    unchanged, and ``sanitize_schema(sanitize_schema(s)) == sanitize_schema(s)``.

    Example
    -------
    >>> sanitize_schema({"$schema": "x", "type": "integer", "format": "uint32"})
    {'type': 'integer', 'format': 'int32'}
    """
    if isinstance(schema, dict):
        out: dict[str, Any] = {}
        for key, value in schema.items():
            if key in _META_KEYS:
                continue
            out[key] = sanitize_schema(value)
        fmt = out.get("format")
        if _is_integer(out) and isinstance(fmt, str):
            out["format"] = _signed_format(fmt)
        return out
    if isinstance(schema, list):
        return [sanitize_schema(item) for item in schema]
    return schema
