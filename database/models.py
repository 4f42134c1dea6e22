"""
Replication Bookkeeping Models.

Tables:
- sync_connections: Durable trust relationships with remote sites
- sync_transfers: One row per table-scoped data movement attempt
- sync_settings: Key-value settings store
"""

import uuid as uuid_lib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer,
    String, Text, TypeDecorator, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================
# COLUMN TYPES
# =============================================================

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every backend.

    Stored as naive UTC so SQLite and PostgreSQL compare the same
    way; returned with tzinfo=UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================
# DECLARATIVE BASE
# =============================================================

class Base(DeclarativeBase):
    """Declarative base for the engine's own tables."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class TimestampMixin:
    """created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow,
    )


# =============================================================
# CONNECTIONS
# =============================================================

class SyncConnection(Base, TimestampMixin):
    """
    Trust relationship between this node and one remote site.

    The remote side only ever presents the bearer token whose
    SHA-256 hash is stored here.
    """

    __tablename__ = "sync_connections"
    __table_args__ = (
        UniqueConstraint("site_url", "direction", name="uq_sync_connections_site_direction"),
        Index("ix_sync_connections_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    site_url: Mapped[str] = mapped_column(String(512), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    # Secrets (hashes only)
    auth_token_hash: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    auth_token_prefix: Mapped[Optional[str]] = mapped_column(String(8))
    download_password_hash: Mapped[Optional[str]] = mapped_column(String(255))

    # Table policy
    approval_mode: Mapped[str] = mapped_column(String(32), nullable=False, default="auto_approve")
    allowed_tables: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    excluded_tables: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    auto_approve_tables: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    default_conflict_strategy: Mapped[str] = mapped_column(String(16), nullable=False, default="skip")

    # Quotas
    max_downloads: Mapped[Optional[int]] = mapped_column(Integer)
    max_records_total: Mapped[Optional[int]] = mapped_column(BigInteger)
    max_records_per_request: Mapped[int] = mapped_column(Integer, nullable=False, default=10000)
    rate_limit_requests_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Temporal / network constraints
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    allowed_hours_start: Mapped[Optional[int]] = mapped_column(Integer)
    allowed_hours_end: Mapped[Optional[int]] = mapped_column(Integer)
    ip_whitelist: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    # Auto sync
    auto_sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_sync_tables: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    auto_sync_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Usage counters
    downloads_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_downloaded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_transfers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_records_transferred: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_bytes_transferred: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_connected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_transfer_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Audit
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    approved_by: Mapped[Optional[str]] = mapped_column(String(255))
    suspended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    suspended_by: Mapped[Optional[str]] = mapped_column(String(255))
    suspended_reason: Mapped[Optional[str]] = mapped_column(Text)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    revoked_by: Mapped[Optional[str]] = mapped_column(String(255))
    revoked_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    extra_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict,
    )

    transfers: Mapped[List["SyncTransfer"]] = relationship(
        back_populates="connection", passive_deletes=True,
    )

    def __repr__(self):
        return (
            f"<SyncConnection(id={self.id}, name='{self.name}', "
            f"direction='{self.direction}', status='{self.status}')>"
        )


# =============================================================
# TRANSFERS
# =============================================================

class SyncTransfer(Base, TimestampMixin):
    """One table-scoped data movement attempt and its state."""

    __tablename__ = "sync_transfers"
    __table_args__ = (
        Index("ix_sync_transfers_status", "status"),
        Index("ix_sync_transfers_table_name", "table_name"),
        Index("ix_sync_transfers_status_expiry", "status", "approval_expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(
        String(36), nullable=False, unique=True, default=lambda: str(uuid_lib.uuid4()),
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    connection_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sync_connections.id", ondelete="SET NULL"),
    )
    session_code: Mapped[Optional[str]] = mapped_column(String(16))
    remote_site_url: Mapped[Optional[str]] = mapped_column(String(512))
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    conflict_strategy: Mapped[str] = mapped_column(String(16), nullable=False, default="skip")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Counters
    records_requested: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    records_transferred: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    records_skipped: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bytes_transferred: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Approval
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    approved_by: Mapped[Optional[str]] = mapped_column(String(255))
    denied_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    denied_by: Mapped[Optional[str]] = mapped_column(String(255))
    denial_reason: Mapped[Optional[str]] = mapped_column(Text)
    approval_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Context
    requester_ip: Mapped[Optional[str]] = mapped_column(String(64))
    requester_user_agent: Mapped[Optional[str]] = mapped_column(String(512))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(255))
    extra_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict,
    )

    # Timestamps
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    connection: Mapped[Optional[SyncConnection]] = relationship(back_populates="transfers")

    # Set by the orchestrator on returned rows; not persisted
    just_transitioned = False

    def __repr__(self):
        return (
            f"<SyncTransfer(id={self.id}, table='{self.table_name}', "
            f"direction='{self.direction}', status='{self.status}')>"
        )


# =============================================================
# SETTINGS
# =============================================================

class SyncSetting(Base):
    """One settings key."""

    __tablename__ = "sync_settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
