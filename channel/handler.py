"""
Channel Protocol - Sender-side Request Handler.

============================================================
PURPOSE
============================================================
Answers receiver requests (capabilities, tables, schema, count,
records) for one authenticated channel.

ORDER OF CHECKS (every request):
1. Connection re-read and access rules (status, expiry, quotas,
   IP allow-list, allowed hours); pairing sessions re-validate
   that their owner is still alive
2. Per-connection rate limit
3. Table identifier, table_allowed and internal-table filter
4. For records: approval workflow, then atomic quota grant

A denied request always produces an explicit error reply, never
an empty result.

============================================================
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Deque, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from channel.envelope import (
    FEATURES,
    PROTOCOL_VERSION,
    ChannelRequest,
    ChannelResponse,
    RequestType,
)
from connections import policy
from connections.registry import ConnectionRegistry
from core.clock import ClockProtocol
from core.exceptions import (
    PolicyDeniedError,
    SyncException,
    ValidationError,
)
from database.models import SyncConnection, SyncTransfer
from pairing.broker import SessionBroker
from sync_data.codec import SafeIdentifier, encode_record, escape_identifier, wire_size
from sync_data.data_exporter import DEFAULT_LIMIT, DataExporter, ExportPage
from transfers.orchestrator import TransferOrchestrator
from transfers.types import TransferDirection, TransferStatus


logger = logging.getLogger(__name__)


S = TransferStatus

# Transfer states a receiver may resume after reconnecting
RESUMABLE = (S.PENDING, S.PENDING_APPROVAL, S.APPROVED, S.IN_PROGRESS)


# ============================================================
# CHANNEL CONTEXT
# ============================================================

@dataclass
class ChannelContext:
    """
    Who is on the other end of one channel.

    Exactly one of connection_id / session_code is set.
    """

    connection_id: Optional[int] = None
    session_code: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    remote_site_url: Optional[str] = None
    # table -> send transfer id served on this channel
    transfers: Dict[str, int] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def for_connection(
        cls,
        connection: SyncConnection,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "ChannelContext":
        return cls(
            connection_id=connection.id,
            client_ip=client_ip,
            user_agent=user_agent,
            remote_site_url=connection.site_url,
        )

    @classmethod
    def for_session(
        cls,
        code: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "ChannelContext":
        return cls(session_code=code, client_ip=client_ip, user_agent=user_agent)


# ============================================================
# RATE LIMITER
# ============================================================

class RateLimiter:
    """
    Sliding one-minute window per connection.

    The limit is passed on every call so an admin change to the
    connection applies immediately.
    """

    def __init__(self, clock: ClockProtocol, window_seconds: float = 60.0):
        self._clock = clock
        self._window = timedelta(seconds=window_seconds)
        self._hits: Dict[Any, Deque] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, key: Any, max_per_window: int) -> bool:
        """Try to take a slot for ``key``."""
        async with self._lock:
            now = self._clock.now()
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self._window:
                hits.popleft()
            if len(hits) >= max_per_window:
                return False
            hits.append(now)
            return True

    def remaining(self, key: Any, max_per_window: int) -> int:
        now = self._clock.now()
        hits = self._hits.get(key, ())
        used = sum(1 for t in hits if t > now - self._window)
        return max(0, max_per_window - used)

    def reset(self, key: Any = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


# ============================================================
# REQUEST HANDLER
# ============================================================

class RequestHandler:
    """
    Sender side of the channel.

    Usage:
        handler = RequestHandler(registry, orchestrator, exporter, broker=broker)
        context = ChannelContext.for_connection(conn, client_ip="10.0.0.5")
        reply = await handler.handle(message, context)
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        orchestrator: TransferOrchestrator,
        exporter: DataExporter,
        broker: Optional[SessionBroker] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._registry = registry
        self._orchestrator = orchestrator
        self._exporter = exporter
        self._inspector = exporter.inspector
        self._broker = broker
        self._rate_limiter = rate_limiter or RateLimiter(registry.clock)

    async def handle(self, message: Any, context: ChannelContext) -> Dict[str, Any]:
        """Answer one raw request; always returns a response envelope."""
        ref = message.get("ref") if isinstance(message, dict) else None
        try:
            request = ChannelRequest.from_dict(message)
            payload = await self._handle_request(request, context)
        except SyncException as e:
            logger.warning(f"Channel request {ref} refused: {e.reason} ({e.message})")
            return ChannelResponse.failure(ref, e.reason).to_dict()
        except SQLAlchemyError as e:
            logger.error(f"Channel request {ref} failed with a database error: {e}")
            return ChannelResponse.failure(ref, "internal_error").to_dict()
        except Exception:
            logger.exception(f"Channel request {ref} failed unexpectedly")
            return ChannelResponse.failure(ref, "internal_error").to_dict()

        return ChannelResponse.success(request.ref, payload).to_dict()

    async def _handle_request(self, request: ChannelRequest, context: ChannelContext) -> Any:
        conn = await asyncio.to_thread(self._authorize, context)

        if conn is not None:
            allowed = await self._rate_limiter.acquire(conn.id, conn.rate_limit_requests_per_minute)
            if not allowed:
                raise PolicyDeniedError("rate_limited")

        kind = request.request_type
        if kind is RequestType.CAPABILITIES:
            return {"version": PROTOCOL_VERSION, "features": list(FEATURES)}
        if kind is RequestType.TABLES:
            return await asyncio.to_thread(self._tables, conn)

        table = self._check_table(request.table, conn)
        if kind is RequestType.SCHEMA:
            schema = await asyncio.to_thread(self._inspector.get_schema, table)
            return schema.to_dict()
        if kind is RequestType.COUNT:
            count = await asyncio.to_thread(self._exporter.count, table)
            return {"table": table, "count": count}

        offset, limit = _parse_pagination(request.pagination)
        async with context.lock:
            return await asyncio.to_thread(self._records, context, conn, table, offset, limit)

    # ---------------------------------------------------------
    # CHECKS
    # ---------------------------------------------------------

    def _authorize(self, context: ChannelContext) -> Optional[SyncConnection]:
        if context.connection_id is not None:
            conn = self._registry.get(context.connection_id)
            self._registry.check_access(conn, context.client_ip)
            return conn
        if context.session_code is not None:
            if self._broker is None:
                raise PolicyDeniedError("invalid_code")
            self._broker.get_session(context.session_code)
            return None
        raise PolicyDeniedError("unauthenticated")

    def _check_table(self, table: Any, conn: Optional[SyncConnection]) -> SafeIdentifier:
        ident = escape_identifier(table)
        if conn is not None and not policy.table_allowed(conn, ident):
            raise PolicyDeniedError("table_not_allowed", f"Table {ident} not allowed for connection {conn.id}")
        if not self._inspector.is_listable(ident):
            raise PolicyDeniedError("table_not_allowed", f"Table {ident} is internal")
        return ident

    # ---------------------------------------------------------
    # ANSWERS
    # ---------------------------------------------------------

    def _tables(self, conn: Optional[SyncConnection]) -> list:
        tables = self._inspector.list_tables()
        if conn is not None:
            tables = [t for t in tables if policy.table_allowed(conn, t.name)]
        return [t.to_dict() for t in tables]

    def _records(
        self,
        context: ChannelContext,
        conn: Optional[SyncConnection],
        table: SafeIdentifier,
        offset: int,
        limit: int,
    ) -> Dict[str, Any]:
        transfer = self._send_transfer(context, conn, table)

        if conn is not None:
            limit = min(limit, conn.max_records_per_request)

        # Quota is charged only once the page has been read and encoded
        page = self._exporter.fetch_records(table, offset=offset, limit=limit)
        records = [encode_record(r) for r in page.records]

        if conn is not None:
            granted = self._registry.grant_download(conn.id, page.limit)
            if granted < page.limit:
                records = records[:granted]
                page = ExportPage(page.table, offset, granted, page.records[:granted])

        transfer = self._orchestrator.increment_progress(
            transfer,
            records_transferred=len(records),
            bytes_transferred=wire_size(records),
        )
        if not page.has_more:
            self._orchestrator.complete(transfer)
            context.transfers.pop(table, None)

        return {
            "table": table,
            "offset": page.offset,
            "limit": page.limit,
            "records": records,
            "has_more": page.has_more,
        }

    def _send_transfer(
        self,
        context: ChannelContext,
        conn: Optional[SyncConnection],
        table: SafeIdentifier,
    ) -> SyncTransfer:
        """
        Find or create the send transfer backing a records request.

        Raises:
            PolicyDeniedError: approval_pending, approval_denied,
                approval_expired or transfer_cancelled
        """
        transfer = None
        transfer_id = context.transfers.get(table)
        if transfer_id is not None:
            transfer = self._orchestrator.get(transfer_id)
            status = S(transfer.status)
            if status is S.DENIED:
                raise PolicyDeniedError("approval_denied")
            if status is S.EXPIRED:
                raise PolicyDeniedError("approval_expired")
            if status is S.CANCELLED:
                raise PolicyDeniedError("transfer_cancelled")
            if status.is_terminal():
                transfer = None
        elif conn is not None:
            resumable = self._orchestrator.list_transfers(
                direction=TransferDirection.SEND.value,
                status=[s.value for s in RESUMABLE],
                table=table,
                connection_id=conn.id,
                limit=1,
            )
            transfer = resumable[0] if resumable else None

        if transfer is None:
            transfer = self._orchestrator.create(
                table,
                TransferDirection.SEND,
                connection=conn,
                session_code=context.session_code,
                remote_site_url=context.remote_site_url,
                records_requested=self._exporter.count(table),
                requester_ip=context.client_ip,
                requester_user_agent=context.user_agent,
            )
        context.transfers[table] = transfer.id

        status = S(transfer.status)
        if status is S.PENDING and transfer.requires_approval:
            self._orchestrator.request_approval(transfer)
            raise PolicyDeniedError("approval_pending", f"Transfer {transfer.id} awaits approval")
        if status is S.PENDING_APPROVAL:
            raise PolicyDeniedError("approval_pending", f"Transfer {transfer.id} awaits approval")
        if status in (S.PENDING, S.APPROVED):
            transfer = self._orchestrator.start(transfer)
        return transfer


def _parse_pagination(pagination: Optional[Dict[str, Any]]) -> tuple:
    pagination = pagination or {}
    offset = pagination.get("offset", 0)
    limit = pagination.get("limit") or DEFAULT_LIMIT
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError("offset must be a non-negative integer", errors={"offset": "invalid"})
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError("limit must be a positive integer", errors={"limit": "invalid"})
    return offset, limit
