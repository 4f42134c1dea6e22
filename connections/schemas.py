"""
Pydantic Schemas for the Connection Registry.
"""

import ipaddress
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sync_data.codec import is_valid_identifier
from sync_data.types import ConflictStrategy


# =============================================================
# ENUMS
# =============================================================

class ConnectionDirection(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionStatus.REVOKED, ConnectionStatus.EXPIRED)


class ApprovalMode(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    PER_TABLE = "per_table"


class IncomingMode(str, Enum):
    AUTO_ACCEPT = "auto_accept"
    REQUIRE_APPROVAL = "require_approval"
    REQUIRE_PASSWORD = "require_password"
    DENY_ALL = "deny_all"


# =============================================================
# VALIDATORS
# =============================================================

def _check_tables(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return values
    bad = [v for v in values if not is_valid_identifier(v)]
    if bad:
        raise ValueError(f"invalid table names: {bad}")
    return values


def _check_ips(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return values
    for value in values:
        try:
            ipaddress.ip_network(value, strict=False)
        except ValueError as e:
            raise ValueError(f"invalid IP or network: {value!r}") from e
    return values


class _ConnectionFields(BaseModel):
    """Validation shared by create and update."""

    model_config = ConfigDict(use_enum_values=True, extra="forbid")

    @field_validator("allowed_tables", "excluded_tables", "auto_approve_tables",
                     "auto_sync_tables", check_fields=False)
    @classmethod
    def validate_tables(cls, v):
        return _check_tables(v)

    @field_validator("ip_whitelist", check_fields=False)
    @classmethod
    def validate_ips(cls, v):
        return _check_ips(v)


# =============================================================
# REQUEST SCHEMAS
# =============================================================

class ConnectionCreate(_ConnectionFields):
    """Attributes for a new connection."""
    name: str = Field(..., min_length=1, max_length=255)
    site_url: str = Field(..., min_length=1, max_length=512)
    direction: ConnectionDirection
    status: ConnectionStatus = ConnectionStatus.PENDING

    # Secrets (plaintext in, hashed before persistence)
    auth_token: Optional[str] = Field(None, min_length=1)
    download_password: Optional[str] = None

    # Table policy
    approval_mode: ApprovalMode = ApprovalMode.AUTO_APPROVE
    allowed_tables: List[str] = Field(default_factory=list)
    excluded_tables: List[str] = Field(default_factory=list)
    auto_approve_tables: List[str] = Field(default_factory=list)
    default_conflict_strategy: ConflictStrategy = ConflictStrategy.SKIP

    # Quotas
    max_downloads: Optional[int] = Field(None, ge=0)
    max_records_total: Optional[int] = Field(None, ge=0)
    max_records_per_request: Optional[int] = Field(None, gt=0)
    rate_limit_requests_per_minute: Optional[int] = Field(None, gt=0)

    # Temporal / network
    expires_at: Optional[datetime] = None
    allowed_hours_start: Optional[int] = Field(None, ge=0, le=23)
    allowed_hours_end: Optional[int] = Field(None, ge=0, le=23)
    ip_whitelist: List[str] = Field(default_factory=list)

    # Auto sync
    auto_sync_enabled: bool = False
    auto_sync_tables: List[str] = Field(default_factory=list)
    auto_sync_interval_minutes: int = Field(60, gt=0)

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def check_hours_pair(self):
        if (self.allowed_hours_start is None) != (self.allowed_hours_end is None):
            raise ValueError("allowed_hours_start and allowed_hours_end must be set together")
        return self


class ConnectionUpdate(_ConnectionFields):
    """Editable attributes. Unset fields are left alone."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    site_url: Optional[str] = Field(None, min_length=1, max_length=512)
    approval_mode: Optional[ApprovalMode] = None
    allowed_tables: Optional[List[str]] = None
    excluded_tables: Optional[List[str]] = None
    auto_approve_tables: Optional[List[str]] = None
    default_conflict_strategy: Optional[ConflictStrategy] = None
    max_downloads: Optional[int] = Field(None, ge=0)
    max_records_total: Optional[int] = Field(None, ge=0)
    max_records_per_request: Optional[int] = Field(None, gt=0)
    rate_limit_requests_per_minute: Optional[int] = Field(None, gt=0)
    expires_at: Optional[datetime] = None
    allowed_hours_start: Optional[int] = Field(None, ge=0, le=23)
    allowed_hours_end: Optional[int] = Field(None, ge=0, le=23)
    ip_whitelist: Optional[List[str]] = None
    auto_sync_enabled: Optional[bool] = None
    auto_sync_tables: Optional[List[str]] = None
    auto_sync_interval_minutes: Optional[int] = Field(None, gt=0)
    metadata: Optional[Dict[str, Any]] = None


# =============================================================
# RESPONSE SCHEMAS
# =============================================================

class ConnectionResponse(BaseModel):
    """Connection as shown to an operator. No secret material."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    site_url: str
    direction: str
    status: str
    approval_mode: str
    allowed_tables: List[str] = []
    excluded_tables: List[str] = []
    auto_approve_tables: List[str] = []
    default_conflict_strategy: str
    max_downloads: Optional[int] = None
    downloads_used: int = 0
    max_records_total: Optional[int] = None
    records_downloaded: int = 0
    max_records_per_request: int
    rate_limit_requests_per_minute: int
    expires_at: Optional[datetime] = None
    allowed_hours_start: Optional[int] = None
    allowed_hours_end: Optional[int] = None
    ip_whitelist: List[str] = []
    auth_token_prefix: Optional[str] = None
    total_transfers: int = 0
    total_records_transferred: int = 0
    total_bytes_transferred: int = 0
    last_connected_at: Optional[datetime] = None
    last_transfer_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    suspended_reason: Optional[str] = None
    revoked_reason: Optional[str] = None
    created_at: datetime


# =============================================================
# PEER MAINTENANCE SCHEMAS
# =============================================================

MIRRORED_STATUSES = (
    ConnectionStatus.ACTIVE,
    ConnectionStatus.SUSPENDED,
    ConnectionStatus.REVOKED,
)


class RemoteConnectionRef(BaseModel):
    """
    How a peer names a connection both sides share.

    site_url is the calling site's own URL; auth_token_hash is the
    SHA-256 hash of the shared token, which both sides store.
    """

    model_config = ConfigDict(extra="ignore")

    site_url: str = Field(..., min_length=1, max_length=512)
    auth_token_hash: str = Field(..., min_length=64, max_length=64)


class RemoteStatusChange(RemoteConnectionRef):
    """A status change the peer asks us to mirror."""
    status: ConnectionStatus

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in MIRRORED_STATUSES:
            raise ValueError(f"status {v.value} cannot be mirrored")
        return v
