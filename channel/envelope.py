"""
Channel Protocol - Envelope.

============================================================
WIRE FORMAT
============================================================
Request:  {"request_type": ..., "table": ..., "pagination":
           {"offset": int, "limit": int}, "ref": str}
Response: {"ref": str, "ok": bool, "payload": ...}
          {"ref": str, "ok": false, "error": reason}

Every request carries a unique ref; the reply echoes it so the
requester can match replies that arrive out of order.

============================================================
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from core.exceptions import (
    NotFoundError,
    PolicyDeniedError,
    SyncException,
    TransportError,
    ValidationError,
)


PROTOCOL_VERSION = "1.0.0"

FEATURES = [
    "tables",
    "schema",
    "count",
    "records",
    "tagged_values",
    "pagination",
]

# Reasons the requester may retry
TRANSPORT_REASONS = frozenset({"timeout", "closed", "transport_error", "handshake_failed"})

NOT_FOUND_REASONS = frozenset({
    "not_found",
    "table_not_found",
    "connection_not_found",
    "transfer_not_found",
    "invalid_code",
})


class RequestType(str, Enum):
    """Channel request kinds."""

    CAPABILITIES = "capabilities"
    TABLES = "tables"
    SCHEMA = "schema"
    COUNT = "count"
    RECORDS = "records"

    @property
    def needs_table(self) -> bool:
        return self in (RequestType.SCHEMA, RequestType.COUNT, RequestType.RECORDS)


def new_ref() -> str:
    return uuid.uuid4().hex


# ============================================================
# REQUEST
# ============================================================

@dataclass
class ChannelRequest:
    """One request from a receiver."""

    request_type: RequestType
    ref: str = field(default_factory=new_ref)
    table: Optional[str] = None
    pagination: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "request_type": self.request_type.value,
            "ref": self.ref,
        }
        if self.table is not None:
            data["table"] = self.table
        if self.pagination is not None:
            data["pagination"] = dict(self.pagination)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ChannelRequest":
        """
        Parse an incoming request.

        Raises:
            ValidationError: malformed envelope
        """
        if not isinstance(data, dict):
            raise ValidationError("Request must be an object", errors={"request": "invalid"})

        ref = data.get("ref")
        if not isinstance(ref, str) or not ref:
            raise ValidationError("Request ref is required", errors={"ref": "missing"})

        try:
            request_type = RequestType(data.get("request_type"))
        except ValueError as e:
            raise ValidationError(
                f"Unknown request type: {data.get('request_type')!r}",
                errors={"request_type": "invalid"},
            ) from e

        table = data.get("table")
        if request_type.needs_table and not isinstance(table, str):
            raise ValidationError("Request needs a table", errors={"table": "missing"})

        pagination = data.get("pagination")
        if pagination is not None and not isinstance(pagination, dict):
            raise ValidationError("pagination must be an object", errors={"pagination": "invalid"})

        return cls(request_type=request_type, ref=ref, table=table, pagination=pagination)


# ============================================================
# RESPONSE
# ============================================================

@dataclass
class ChannelResponse:
    """Reply to one request, tagged with the request's ref."""

    ref: Optional[str]
    ok: bool
    payload: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, ref: Optional[str], payload: Any) -> "ChannelResponse":
        return cls(ref=ref, ok=True, payload=payload)

    @classmethod
    def failure(cls, ref: Optional[str], reason: str) -> "ChannelResponse":
        return cls(ref=ref, ok=False, error=reason)

    @property
    def is_transport_error(self) -> bool:
        return not self.ok and self.error in TRANSPORT_REASONS

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ref": self.ref, "ok": True, "payload": self.payload}
        return {"ref": self.ref, "ok": False, "error": self.error}

    @classmethod
    def from_dict(cls, data: Any) -> "ChannelResponse":
        if not isinstance(data, dict) or "ok" not in data:
            raise ValidationError("Malformed response", errors={"response": "invalid"})
        if data["ok"]:
            return cls.success(data.get("ref"), data.get("payload"))
        return cls.failure(data.get("ref"), str(data.get("error") or "error"))

    def to_exception(self) -> SyncException:
        """Map an error reply onto the local exception taxonomy."""
        reason = self.error or "error"
        message = f"Remote error: {reason}"
        if reason in TRANSPORT_REASONS:
            return TransportError(message, reason=reason)
        if reason in NOT_FOUND_REASONS:
            return NotFoundError(message, reason=reason)
        if reason in ("invalid_attributes", "invalid_identifier"):
            return ValidationError(message, reason=reason)
        return PolicyDeniedError(reason, message)

    def unwrap(self) -> Any:
        """Return the payload or raise the mapped exception."""
        if not self.ok:
            raise self.to_exception()
        return self.payload
