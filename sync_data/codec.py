"""
Identifier / Value Codec.

============================================================
PURPOSE
============================================================
The only path by which a table or column name coming from a
remote peer reaches generated SQL, and the value codec used on
the wire.

- escape_identifier: fail-closed [A-Za-z_][A-Za-z0-9_]* gate
- encode_literal: dialect-correct SQL literal (SQL export)
- encode_value / decode_value: JSON-safe tagged wire values

Wire tags:
    {"__type__": "datetime" | "date" | "time" | "decimal" | "bytes",
     "value": "<ISO-8601, decimal or base64 string>"}

============================================================
"""

import base64
import json
import math
import re
import uuid
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping

from core.exceptions import InvalidIdentifierError


IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

TYPE_TAG = "__type__"
LEGACY_TYPE_TAG = "type"
WIRE_TYPES = frozenset({"datetime", "date", "time", "decimal", "bytes"})


# ============================================================
# IDENTIFIERS
# ============================================================

class SafeIdentifier(str):
    """A name that passed escape_identifier."""

    @property
    def quoted(self) -> str:
        """Double-quoted form for interpolation into SQL."""
        return f'"{self}"'


def is_valid_identifier(name: Any) -> bool:
    return isinstance(name, str) and IDENTIFIER_PATTERN.fullmatch(name) is not None


def escape_identifier(name: Any) -> SafeIdentifier:
    """
    Validate a table/column name.

    Raises:
        InvalidIdentifierError: for anything outside the pattern,
            including non-strings. Never truncates or strips.
    """
    if isinstance(name, SafeIdentifier):
        return name
    if not is_valid_identifier(name):
        raise InvalidIdentifierError(name)
    return SafeIdentifier(name)


def escape_identifiers(names: Iterable[Any]) -> List[SafeIdentifier]:
    """Validate every name; the first bad one aborts the whole list."""
    return [escape_identifier(n) for n in names]


# ============================================================
# SQL LITERALS
# ============================================================

def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def encode_literal(value: Any, dialect: str = "postgresql") -> str:
    """
    Render a typed value as a SQL literal.

    Used for INSERT export only. Live imports bind parameters.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        if dialect == "sqlite":
            return "1" if value else "0"
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return _quote(str(value))
        return repr(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return _quote(str(value))
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return _quote(value.isoformat())
    if isinstance(value, uuid.UUID):
        return _quote(str(value))
    if isinstance(value, (bytes, bytearray, memoryview)):
        hex_value = bytes(value).hex()
        if dialect == "postgresql":
            return f"'\\x{hex_value}'"
        return f"X'{hex_value}'"
    if isinstance(value, (dict, list)):
        return _quote(json.dumps(value, default=str))
    return _quote(str(value))


# ============================================================
# WIRE VALUES
# ============================================================

def _tag(kind: str, value: str) -> Dict[str, str]:
    return {TYPE_TAG: kind, "value": value}


def encode_value(value: Any) -> Any:
    """Typed value -> JSON-compatible wire value."""
    # datetime is a date subclass; check it first
    if isinstance(value, datetime):
        return _tag("datetime", value.isoformat())
    if isinstance(value, date):
        return _tag("date", value.isoformat())
    if isinstance(value, time):
        return _tag("time", value.isoformat())
    if isinstance(value, Decimal):
        return _tag("decimal", str(value))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _tag("bytes", base64.b64encode(bytes(value)).decode("ascii"))
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _tagged(value: Mapping, tag_key: str) -> tuple:
    if set(value) != {tag_key, "value"}:
        return None, None
    kind = value[tag_key]
    if isinstance(kind, str) and kind in WIRE_TYPES and isinstance(value["value"], str):
        return kind, value["value"]
    return None, None


def _parse_datetime(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _parse_tagged(kind: str, payload: str) -> Any:
    if kind == "datetime":
        return _parse_datetime(payload)
    if kind == "date":
        return date.fromisoformat(payload)
    if kind == "time":
        return time.fromisoformat(payload)
    if kind == "decimal":
        try:
            return Decimal(payload)
        except InvalidOperation as e:
            raise ValueError(f"Invalid decimal: {payload!r}") from e
    return base64.b64decode(payload, validate=True)


def decode_value(value: Any) -> Any:
    """
    Wire value -> typed value.

    Untagged values pass through unchanged. ``__type__`` tags with
    an unparseable payload raise ValueError. The legacy ``type``
    tag is honoured only for an exact {"type", "value"} pair whose
    payload parses; anything else is ordinary JSON data and is
    returned as is.
    """
    if not isinstance(value, Mapping):
        return value

    kind, payload = _tagged(value, TYPE_TAG)
    if kind is not None:
        return _parse_tagged(kind, payload)

    kind, payload = _tagged(value, LEGACY_TYPE_TAG)
    if kind is None:
        return value
    try:
        return _parse_tagged(kind, payload)
    except ValueError:
        return value


def encode_record(record: Mapping[Any, Any]) -> Dict[str, Any]:
    return {str(k): encode_value(v) for k, v in record.items()}


def decode_record(record: Mapping[Any, Any]) -> Dict[str, Any]:
    """Normalize keys to strings and decode tagged values."""
    return {str(k): decode_value(v) for k, v in record.items()}


def wire_size(payload: Any) -> int:
    """Size in bytes of the JSON form of an already-encoded payload."""
    return len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
