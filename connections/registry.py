"""
Connection Registry.

============================================================
PURPOSE
============================================================
Durable trust relationships between this node and remote sites.

LIFECYCLE:

    pending ──approve──► active ◄──reactivate── suspended
       │                   │  └────suspend────────►│
       │                   │                       │
       └──────revoke───────┴─────────revoke────────┘
                           │
                 expire (sweep / limits)
                           ▼
                        expired

    revoked and expired are terminal.

INVARIANTS:
- Tokens are stored only as SHA-256 hashes, download passwords
  as salted PBKDF2 hashes
- One connection per (site_url, direction)
- Status transitions are conditional UPDATEs on the current
  status, so concurrent admins cannot both win
- Quota check and increment are one conditional UPDATE

============================================================
"""

import hmac
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from connections import policy
from connections.schemas import (
    ConnectionCreate,
    ConnectionStatus,
    ConnectionUpdate,
    IncomingMode,
    MIRRORED_STATUSES,
)
from connections.security import (
    generate_auth_token,
    hash_password,
    hash_secret,
    token_prefix,
    verify_optional_password,
    verify_secret,
)
from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import (
    ConnectionNotFoundError,
    DuplicateConnectionError,
    InvalidTransitionError,
    PolicyDeniedError,
    ValidationError,
)
from core.settings import SyncConfig
from database.engine import Database
from database.models import SyncConnection


logger = logging.getLogger(__name__)


ConnectionRef = Union[int, SyncConnection]

# (connection, event) where event is the new status or "deleted"
ConnectionListener = Callable[[SyncConnection, str], None]

DELETED_EVENT = "deleted"

NON_TERMINAL = (
    ConnectionStatus.PENDING.value,
    ConnectionStatus.ACTIVE.value,
    ConnectionStatus.SUSPENDED.value,
)

LIST_FIELDS = (
    "allowed_tables",
    "excluded_tables",
    "auto_approve_tables",
    "auto_sync_tables",
    "ip_whitelist",
)

REQUIRED_FIELDS = (
    "name",
    "site_url",
    "approval_mode",
    "default_conflict_strategy",
    "max_records_per_request",
    "rate_limit_requests_per_minute",
    "auto_sync_enabled",
    "auto_sync_interval_minutes",
)

GRANT_ATTEMPTS = 5

REMOTE_ACTOR = "remote"


def _conn_id(connection: ConnectionRef) -> int:
    return connection.id if isinstance(connection, SyncConnection) else int(connection)


def _parse(schema: type, attrs: Union[Mapping[str, Any], BaseModel]) -> BaseModel:
    if isinstance(attrs, schema):
        return attrs
    if isinstance(attrs, BaseModel):
        attrs = attrs.model_dump(exclude_unset=True)
    try:
        return schema.model_validate(dict(attrs))
    except PydanticValidationError as e:
        errors = {".".join(str(p) for p in err["loc"]) or "__root__": err["msg"] for err in e.errors()}
        raise ValidationError(f"Invalid connection attributes: {errors}", errors=errors) from e


class ConnectionRegistry:
    """
    Service for connection lifecycle, authentication and usage.

    Usage:
        registry = ConnectionRegistry(db, config)
        conn, token = registry.create({...})
        registry.approve(conn, approver_id="admin")
        granted = registry.grant_download(conn, requested=500)
    """

    def __init__(
        self,
        db: Database,
        config: Optional[SyncConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._db = db
        self._config = config or SyncConfig()
        self._clock = clock or SystemClock()
        self._listeners: List[ConnectionListener] = []

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    @property
    def config(self) -> SyncConfig:
        return self._config

    def add_listener(self, listener: ConnectionListener) -> None:
        """Called after every local status change and delete."""
        self._listeners.append(listener)

    def _emit(self, conn: SyncConnection, event: str) -> None:
        for listener in self._listeners:
            listener(conn, event)

    # =========================================================
    # CRUD
    # =========================================================

    def create(
        self,
        attrs: Union[Mapping[str, Any], ConnectionCreate],
    ) -> Tuple[SyncConnection, str]:
        """
        Validate and persist a new connection.

        Returns the connection and the plaintext bearer token. A
        token is generated when none is supplied; only its hash is
        stored, so this is the only time it can be read.

        Raises:
            ValidationError: attributes rejected
            DuplicateConnectionError: site_url + direction taken
        """
        data = _parse(ConnectionCreate, attrs).model_dump()

        token = data.pop("auth_token") or generate_auth_token()
        password = data.pop("download_password")
        metadata = data.pop("metadata")

        if data["max_records_per_request"] is None:
            data["max_records_per_request"] = self._config.sync_default_max_records_per_request
        if data["rate_limit_requests_per_minute"] is None:
            data["rate_limit_requests_per_minute"] = self._config.sync_default_rate_limit_per_minute
        data["expires_at"] = ensure_utc(data["expires_at"])

        now = self._clock.now()
        conn = SyncConnection(
            **data,
            auth_token_hash=hash_secret(token),
            auth_token_prefix=token_prefix(token),
            download_password_hash=hash_password(password) if password else None,
            extra_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        if conn.status == ConnectionStatus.ACTIVE.value:
            conn.approved_at = now

        with self._db.transaction_scope() as session:
            if self._find_pair(session, conn.site_url, conn.direction) is not None:
                raise DuplicateConnectionError(
                    f"Connection already exists for {conn.site_url} ({conn.direction})"
                )
            session.add(conn)
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateConnectionError(
                    f"Connection already exists for {conn.site_url} ({conn.direction})",
                    cause=e,
                ) from e

        logger.info(
            f"Connection created: id={conn.id} name={conn.name!r} "
            f"direction={conn.direction} status={conn.status} token={conn.auth_token_prefix}..."
        )
        return conn, token

    def get(self, connection: ConnectionRef) -> SyncConnection:
        conn_id = _conn_id(connection)
        with self._db.session_scope() as session:
            conn = session.get(SyncConnection, conn_id)
            if conn is None:
                raise ConnectionNotFoundError(f"Connection {conn_id} not found")
            return conn

    def find_by_token(self, token: Optional[str]) -> Optional[SyncConnection]:
        """Look up by bearer token, comparing hashes in constant time."""
        if not token:
            return None
        token_hash = hash_secret(token)
        with self._db.session_scope() as session:
            conn = session.execute(
                select(SyncConnection).where(SyncConnection.auth_token_hash == token_hash)
            ).scalars().first()
        if conn is None or not verify_secret(token, conn.auth_token_hash):
            return None
        return conn

    def find_by_site_url(
        self,
        site_url: str,
        direction: Optional[str] = None,
    ) -> Optional[SyncConnection]:
        with self._db.session_scope() as session:
            stmt = select(SyncConnection).where(SyncConnection.site_url == site_url)
            if direction:
                stmt = stmt.where(SyncConnection.direction == direction)
            return session.execute(stmt.order_by(SyncConnection.id)).scalars().first()

    def find_shared(
        self,
        site_url: str,
        token_hash: str,
        direction: Optional[str] = None,
    ) -> Optional[SyncConnection]:
        """
        Look up the local half of a connection a peer refers to.

        ``site_url`` is the peer's URL and ``token_hash`` the stored
        hash of the token both sides share. site_url is ignored when
        None.
        """
        with self._db.session_scope() as session:
            stmt = select(SyncConnection).where(SyncConnection.auth_token_hash == token_hash)
            if site_url is not None:
                stmt = stmt.where(SyncConnection.site_url == site_url)
            if direction:
                stmt = stmt.where(SyncConnection.direction == direction)
            conn = session.execute(stmt.order_by(SyncConnection.id)).scalars().first()
        if conn is None or not hmac.compare_digest(conn.auth_token_hash, token_hash):
            return None
        return conn

    def list_connections(
        self,
        direction: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[SyncConnection]:
        with self._db.session_scope() as session:
            stmt = select(SyncConnection)
            if direction:
                stmt = stmt.where(SyncConnection.direction == direction)
            if status:
                stmt = stmt.where(SyncConnection.status == status)
            return list(session.execute(stmt.order_by(SyncConnection.id)).scalars().all())

    def update(
        self,
        connection: ConnectionRef,
        attrs: Union[Mapping[str, Any], ConnectionUpdate],
    ) -> SyncConnection:
        """Apply editable attributes. Status changes go through the transitions."""
        changes = _parse(ConnectionUpdate, attrs).model_dump(exclude_unset=True)
        if "metadata" in changes:
            changes["extra_metadata"] = changes.pop("metadata") or {}
        for key in LIST_FIELDS:
            if key in changes and changes[key] is None:
                changes[key] = []
        for key in REQUIRED_FIELDS:
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be cleared", errors={key: "required"})
        if "expires_at" in changes:
            changes["expires_at"] = ensure_utc(changes["expires_at"])

        with self._db.transaction_scope() as session:
            conn = self._load(session, connection)
            for key, value in changes.items():
                setattr(conn, key, value)
            if (conn.allowed_hours_start is None) != (conn.allowed_hours_end is None):
                raise ValidationError(
                    "allowed_hours_start and allowed_hours_end must be set together",
                    errors={"allowed_hours": "incomplete"},
                )
            conn.updated_at = self._clock.now()
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateConnectionError(
                    f"Connection already exists for {conn.site_url} ({conn.direction})",
                    cause=e,
                ) from e

        logger.info(f"Connection {conn.id} updated: {sorted(changes)}")
        return conn

    def delete(self, connection: ConnectionRef) -> None:
        conn = self._delete(connection)
        self._emit(conn, DELETED_EVENT)

    def _delete(self, connection: ConnectionRef) -> SyncConnection:
        with self._db.transaction_scope() as session:
            conn = self._load(session, connection)
            session.delete(conn)
        logger.info(f"Connection {conn.id} deleted")
        return conn

    # =========================================================
    # STATUS TRANSITIONS
    # =========================================================

    def approve(self, connection: ConnectionRef, approver_id: str) -> SyncConnection:
        """pending -> active."""
        now = self._clock.now()
        conn = self._transition(
            connection,
            allowed_from=(ConnectionStatus.PENDING.value,),
            reason="cannot_approve",
            status=ConnectionStatus.ACTIVE.value,
            approved_at=now,
            approved_by=approver_id,
        )
        logger.info(f"Connection {conn.id} approved by {approver_id}")
        self._emit(conn, conn.status)
        return conn

    def suspend(
        self,
        connection: ConnectionRef,
        admin_id: str,
        reason: Optional[str] = None,
    ) -> SyncConnection:
        """active -> suspended."""
        conn = self._transition(
            connection,
            allowed_from=(ConnectionStatus.ACTIVE.value,),
            reason="cannot_suspend",
            status=ConnectionStatus.SUSPENDED.value,
            suspended_at=self._clock.now(),
            suspended_by=admin_id,
            suspended_reason=reason,
        )
        logger.info(f"Connection {conn.id} suspended by {admin_id}: {reason}")
        self._emit(conn, conn.status)
        return conn

    def reactivate(self, connection: ConnectionRef) -> SyncConnection:
        """suspended -> active, clearing the suspension fields."""
        conn = self._transition(
            connection,
            allowed_from=(ConnectionStatus.SUSPENDED.value,),
            reason="cannot_reactivate",
            status=ConnectionStatus.ACTIVE.value,
            suspended_at=None,
            suspended_by=None,
            suspended_reason=None,
        )
        logger.info(f"Connection {conn.id} reactivated")
        self._emit(conn, conn.status)
        return conn

    def revoke(
        self,
        connection: ConnectionRef,
        admin_id: str,
        reason: Optional[str] = None,
    ) -> SyncConnection:
        """Any non-terminal status -> revoked."""
        conn = self._transition(
            connection,
            allowed_from=NON_TERMINAL,
            reason="cannot_revoke",
            status=ConnectionStatus.REVOKED.value,
            revoked_at=self._clock.now(),
            revoked_by=admin_id,
            revoked_reason=reason,
        )
        logger.info(f"Connection {conn.id} revoked by {admin_id}: {reason}")
        self._emit(conn, conn.status)
        return conn

    def _transition(
        self,
        connection: ConnectionRef,
        allowed_from: Tuple[str, ...],
        reason: str,
        **values: Any,
    ) -> SyncConnection:
        conn_id = _conn_id(connection)
        values["updated_at"] = self._clock.now()

        with self._db.transaction_scope() as session:
            result = session.execute(
                update(SyncConnection)
                .where(SyncConnection.id == conn_id, SyncConnection.status.in_(allowed_from))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            conn = session.get(SyncConnection, conn_id, populate_existing=True)
            if conn is None:
                raise ConnectionNotFoundError(f"Connection {conn_id} not found")
            if result.rowcount == 0:
                raise InvalidTransitionError(reason, from_state=conn.status)
            return conn

    # =========================================================
    # PEER MIRRORING
    # =========================================================

    def apply_remote_status(self, connection: ConnectionRef, status: str) -> SyncConnection:
        """
        Mirror a status the peer set on its half of the connection.

        Listeners are not called, so the change is never echoed back
        to the peer. Already being in ``status`` is a no-op.

        Raises:
            InvalidTransitionError: the local state cannot reach status
            ValidationError: status is not active, suspended or revoked
        """
        try:
            target = ConnectionStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown status: {status}", errors={"status": "invalid"}) from e
        if target not in MIRRORED_STATUSES:
            raise ValidationError(
                f"Status {target.value} cannot be mirrored", errors={"status": "invalid"},
            )

        conn = self.get(connection)
        if conn.status == target.value:
            return conn

        now = self._clock.now()
        if target is ConnectionStatus.ACTIVE and conn.status == ConnectionStatus.PENDING.value:
            conn = self._transition(
                conn,
                allowed_from=(ConnectionStatus.PENDING.value,),
                reason="cannot_approve",
                status=target.value,
                approved_at=now,
                approved_by=REMOTE_ACTOR,
            )
        elif target is ConnectionStatus.ACTIVE:
            conn = self._transition(
                conn,
                allowed_from=(ConnectionStatus.SUSPENDED.value,),
                reason="cannot_reactivate",
                status=target.value,
                suspended_at=None,
                suspended_by=None,
                suspended_reason=None,
            )
        elif target is ConnectionStatus.SUSPENDED:
            conn = self._transition(
                conn,
                allowed_from=(ConnectionStatus.ACTIVE.value,),
                reason="cannot_suspend",
                status=target.value,
                suspended_at=now,
                suspended_by=REMOTE_ACTOR,
                suspended_reason="suspended by peer",
            )
        else:
            conn = self._transition(
                conn,
                allowed_from=NON_TERMINAL,
                reason="cannot_revoke",
                status=target.value,
                revoked_at=now,
                revoked_by=REMOTE_ACTOR,
                revoked_reason="revoked by peer",
            )

        logger.info(f"Connection {conn.id} set to {conn.status} by peer {conn.site_url}")
        return conn

    def apply_remote_delete(self, connection: ConnectionRef) -> None:
        """Delete the local half after the peer deleted its own; not echoed."""
        self._delete(connection)

    # =========================================================
    # SECRETS / AUTHENTICATION
    # =========================================================

    def verify_token(self, connection: SyncConnection, token: Optional[str]) -> bool:
        return verify_secret(token, connection.auth_token_hash)

    def verify_download_password(self, connection: SyncConnection, password: Optional[str]) -> bool:
        """True when no password is set."""
        return verify_optional_password(password, connection.download_password_hash)

    def set_download_password(self, connection: ConnectionRef, password: Optional[str]) -> SyncConnection:
        """Set or, with an empty value, clear the download password."""
        with self._db.transaction_scope() as session:
            conn = self._load(session, connection)
            conn.download_password_hash = hash_password(password) if password else None
            conn.updated_at = self._clock.now()
        logger.info(f"Download password {'set' if password else 'cleared'} for connection {conn.id}")
        return conn

    def regenerate_token(self, connection: ConnectionRef) -> str:
        """Issue a new bearer token; the old one stops working."""
        token = generate_auth_token()
        with self._db.transaction_scope() as session:
            conn = self._load(session, connection)
            conn.auth_token_hash = hash_secret(token)
            conn.auth_token_prefix = token_prefix(token)
            conn.updated_at = self._clock.now()
        logger.info(f"Token regenerated for connection {conn.id}: {token_prefix(token)}...")
        return token

    def validate_connection(self, token: Optional[str], client_ip: Optional[str] = None) -> SyncConnection:
        """
        Authenticate a bearer token and check every access rule.

        Raises:
            PolicyDeniedError: reason is the first failing check of
                invalid_token, connection_not_active, connection_expired,
                download_limit_reached, record_limit_reached,
                ip_not_allowed, outside_allowed_hours
        """
        conn = self.find_by_token(token)
        if conn is None:
            raise PolicyDeniedError("invalid_token")
        self.check_access(conn, client_ip)
        return conn

    def check_access(self, conn: SyncConnection, client_ip: Optional[str] = None) -> None:
        """Raise PolicyDeniedError unless the connection may serve a request now."""
        now = self._clock.now()
        if conn.status != ConnectionStatus.ACTIVE.value:
            raise PolicyDeniedError("connection_not_active")
        if policy.is_expired(conn, now):
            raise PolicyDeniedError("connection_expired")
        if not policy.within_download_limits(conn):
            raise PolicyDeniedError("download_limit_reached")
        if not policy.within_record_limits(conn):
            raise PolicyDeniedError("record_limit_reached")
        if not policy.ip_allowed(conn, client_ip):
            logger.warning(f"Connection {conn.id}: request from {client_ip} not in allow-list")
            raise PolicyDeniedError("ip_not_allowed")
        if not policy.within_allowed_hours(conn, now):
            raise PolicyDeniedError("outside_allowed_hours")

    def accept_incoming(
        self,
        attrs: Mapping[str, Any],
        password: Optional[str] = None,
    ) -> Tuple[SyncConnection, str]:
        """
        Register a connection requested by a remote site.

        The configured incoming mode decides the outcome:
        auto_accept creates it active, require_approval creates it
        pending, require_password checks the incoming password and
        creates it active, deny_all refuses.
        """
        if not self._config.sync_enabled:
            raise PolicyDeniedError("sync_disabled")

        mode = IncomingMode(self._config.sync_incoming_mode)
        attrs = dict(attrs)

        if mode is IncomingMode.DENY_ALL:
            logger.warning(f"Incoming connection from {attrs.get('site_url')} denied")
            raise PolicyDeniedError("incoming_denied")

        if mode is IncomingMode.REQUIRE_PASSWORD:
            expected = self._config.sync_incoming_password
            if not expected or not password or not hmac.compare_digest(
                hash_secret(password), hash_secret(expected)
            ):
                logger.warning(f"Incoming connection from {attrs.get('site_url')}: bad password")
                raise PolicyDeniedError("invalid_password")

        if mode is IncomingMode.REQUIRE_APPROVAL:
            attrs["status"] = ConnectionStatus.PENDING.value
        else:
            attrs["status"] = ConnectionStatus.ACTIVE.value
            attrs.setdefault("created_by", "incoming")

        return self.create(attrs)

    # =========================================================
    # USAGE ACCOUNTING
    # =========================================================

    def record_usage(
        self,
        connection: ConnectionRef,
        downloads: int = 0,
        records: int = 0,
    ) -> SyncConnection:
        """
        Increment usage counters unconditionally.

        Callers must re-check is_active afterwards. Use
        grant_download to check and consume in one step.
        """
        conn_id = _conn_id(connection)
        with self._db.transaction_scope() as session:
            session.execute(
                update(SyncConnection)
                .where(SyncConnection.id == conn_id)
                .values(
                    downloads_used=SyncConnection.downloads_used + downloads,
                    records_downloaded=SyncConnection.records_downloaded + records,
                )
                .execution_options(synchronize_session=False)
            )
            conn = session.get(SyncConnection, conn_id, populate_existing=True)
            if conn is None:
                raise ConnectionNotFoundError(f"Connection {conn_id} not found")
            return conn

    def grant_download(self, connection: ConnectionRef, requested: int) -> int:
        """
        Atomically consume one download and up to ``requested`` records.

        The granted record count is clamped to the remaining record
        allowance. The increment is a single conditional UPDATE on
        the counters as read, retried if another request moved them.

        Returns:
            Number of records the caller may serve.

        Raises:
            PolicyDeniedError: quota exhausted or connection not usable
        """
        if requested <= 0:
            raise ValidationError("requested must be positive", errors={"requested": "invalid"})

        conn_id = _conn_id(connection)
        for _ in range(GRANT_ATTEMPTS):
            conn = self.get(conn_id)
            self._check_grantable(conn)

            remaining = policy.remaining_records(conn)
            granted = requested if remaining is None else min(requested, remaining)

            with self._db.transaction_scope() as session:
                result = session.execute(
                    update(SyncConnection)
                    .where(
                        SyncConnection.id == conn_id,
                        SyncConnection.status == ConnectionStatus.ACTIVE.value,
                        SyncConnection.downloads_used == conn.downloads_used,
                        SyncConnection.records_downloaded == conn.records_downloaded,
                    )
                    .values(
                        downloads_used=SyncConnection.downloads_used + 1,
                        records_downloaded=SyncConnection.records_downloaded + granted,
                        last_connected_at=self._clock.now(),
                    )
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount == 1:
                logger.debug(f"Connection {conn_id}: granted {granted}/{requested} records")
                return granted

        logger.warning(f"Connection {conn_id}: quota grant lost {GRANT_ATTEMPTS} races")
        raise PolicyDeniedError("quota_contention")

    def _check_grantable(self, conn: SyncConnection) -> None:
        now = self._clock.now()
        if conn.status != ConnectionStatus.ACTIVE.value:
            raise PolicyDeniedError("connection_not_active")
        if policy.is_expired(conn, now):
            raise PolicyDeniedError("connection_expired")
        if not policy.within_download_limits(conn):
            raise PolicyDeniedError("download_limit_reached")
        if not policy.within_record_limits(conn):
            raise PolicyDeniedError("record_limit_reached")

    def record_transfer(
        self,
        connection: ConnectionRef,
        records: int = 0,
        bytes_count: int = 0,
    ) -> None:
        """Bump lifetime totals after a transfer finishes."""
        conn_id = _conn_id(connection)
        with self._db.transaction_scope() as session:
            session.execute(
                update(SyncConnection)
                .where(SyncConnection.id == conn_id)
                .values(
                    total_transfers=SyncConnection.total_transfers + 1,
                    total_records_transferred=SyncConnection.total_records_transferred + records,
                    total_bytes_transferred=SyncConnection.total_bytes_transferred + bytes_count,
                    last_transfer_at=self._clock.now(),
                )
                .execution_options(synchronize_session=False)
            )

    def touch_connected(self, connection: ConnectionRef) -> None:
        conn_id = _conn_id(connection)
        with self._db.transaction_scope() as session:
            session.execute(
                update(SyncConnection)
                .where(SyncConnection.id == conn_id)
                .values(last_connected_at=self._clock.now())
                .execution_options(synchronize_session=False)
            )

    def remaining_downloads(self, connection: ConnectionRef) -> Optional[int]:
        """None means unlimited."""
        return policy.remaining_downloads(self.get(connection))

    def remaining_records(self, connection: ConnectionRef) -> Optional[int]:
        """None means unlimited."""
        return policy.remaining_records(self.get(connection))

    # =========================================================
    # MAINTENANCE
    # =========================================================

    def expire_connections(self) -> int:
        """
        Move active connections past expiry or over a limit to expired.

        Conditional UPDATE; safe to run repeatedly and concurrently.
        """
        now = self._clock.now()
        with self._db.transaction_scope() as session:
            result = session.execute(
                update(SyncConnection)
                .where(
                    SyncConnection.status == ConnectionStatus.ACTIVE.value,
                    or_(
                        and_(SyncConnection.expires_at.is_not(None), SyncConnection.expires_at < now),
                        and_(
                            SyncConnection.max_downloads.is_not(None),
                            SyncConnection.downloads_used >= SyncConnection.max_downloads,
                        ),
                        and_(
                            SyncConnection.max_records_total.is_not(None),
                            SyncConnection.records_downloaded >= SyncConnection.max_records_total,
                        ),
                    ),
                )
                .values(status=ConnectionStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        count = result.rowcount or 0
        if count:
            logger.info(f"Expired {count} connections")
        return count

    def expiring_soon(self, hours: int = 24) -> List[SyncConnection]:
        """Active connections whose expiry falls within the next ``hours``."""
        now = self._clock.now()
        with self._db.session_scope() as session:
            return list(
                session.execute(
                    select(SyncConnection)
                    .where(
                        SyncConnection.status == ConnectionStatus.ACTIVE.value,
                        SyncConnection.expires_at.is_not(None),
                        SyncConnection.expires_at > now,
                        SyncConnection.expires_at <= now + timedelta(hours=hours),
                    )
                    .order_by(SyncConnection.expires_at)
                ).scalars().all()
            )

    def stats(self, connection: ConnectionRef) -> Dict[str, Any]:
        conn = self.get(connection)
        return {
            "downloads_used": conn.downloads_used,
            "remaining_downloads": policy.remaining_downloads(conn),
            "records_downloaded": conn.records_downloaded,
            "remaining_records": policy.remaining_records(conn),
            "total_transfers": conn.total_transfers,
            "total_records_transferred": conn.total_records_transferred,
            "total_bytes_transferred": conn.total_bytes_transferred,
            "last_connected_at": conn.last_connected_at,
            "last_transfer_at": conn.last_transfer_at,
        }

    # =========================================================
    # HELPERS
    # =========================================================

    @staticmethod
    def _load(session: Session, connection: ConnectionRef) -> SyncConnection:
        conn_id = _conn_id(connection)
        conn = session.get(SyncConnection, conn_id)
        if conn is None:
            raise ConnectionNotFoundError(f"Connection {conn_id} not found")
        return conn

    @staticmethod
    def _find_pair(session: Session, site_url: str, direction: str) -> Optional[SyncConnection]:
        return session.execute(
            select(SyncConnection).where(
                SyncConnection.site_url == site_url,
                SyncConnection.direction == direction,
            )
        ).scalars().first()
