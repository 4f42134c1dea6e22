"""
Tests for the Channel Protocol over the loopback transport.

============================================================
PURPOSE
============================================================
Sender and receiver each own a SQLite database; the receiver
talks to the sender's RequestHandler through a LoopbackTransport.

- every denial is an explicit error reply
- replies are matched by ref, timeouts resolve to "timeout"
- the replicator records failures on the receive transfer

============================================================
"""

import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from channel.client import ChannelClient
from channel.envelope import ChannelRequest, ChannelResponse, RequestType
from channel.handler import ChannelContext, RateLimiter, RequestHandler
from channel.replicator import Replicator
from channel.transport import LoopbackTransport, Transport
from core.exceptions import PolicyDeniedError, TransportError, ValidationError
from core.settings import SyncConfig


# ============================================================
# HELPERS
# ============================================================

class SilentTransport(Transport):
    """Accepts requests and never answers."""

    def __init__(self):
        self.sent = []
        self._closed = False
        self._done = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message):
        self.sent.append(message)

    async def receive(self):
        await self._done.wait()
        raise TransportError("Transport closed", reason="closed")

    async def close(self):
        self._closed = True
        self._done.set()


class ScriptedClient:
    """Stand-in client whose schema replies come from a list."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    async def request_schema(self, table):
        self.calls += 1
        return self.replies.pop(0)


@pytest.fixture
def handler(registry, orchestrator, exporter, broker):
    return RequestHandler(registry, orchestrator, exporter, broker=broker)


@pytest.fixture
def connect(handler):
    """Build a client for a connection context."""

    def _connect(conn, timeout=5.0):
        context = ChannelContext.for_connection(conn, client_ip="10.0.0.5", user_agent="pytest")
        return ChannelClient(LoopbackTransport(handler, context), timeout=timeout)

    return _connect


# ============================================================
# ENVELOPE
# ============================================================

class TestEnvelope:
    """Tests for request/response envelopes."""

    def test_request_round_trip(self):
        request = ChannelRequest(RequestType.RECORDS, table="users", pagination={"offset": 0, "limit": 5})
        parsed = ChannelRequest.from_dict(request.to_dict())
        assert parsed == request

    @pytest.mark.parametrize("message", [
        "garbage",
        {"request_type": "tables"},
        {"request_type": "drop", "ref": "r1"},
        {"request_type": "records", "ref": "r1"},
        {"request_type": "records", "ref": "r1", "table": "users", "pagination": [0, 5]},
    ])
    def test_malformed_requests(self, message):
        with pytest.raises(ValidationError):
            ChannelRequest.from_dict(message)

    def test_error_mapping(self):
        assert isinstance(ChannelResponse.failure("r", "timeout").to_exception(), TransportError)
        denied = ChannelResponse.failure("r", "table_not_allowed").to_exception()
        assert isinstance(denied, PolicyDeniedError)
        assert denied.reason == "table_not_allowed"
        assert ChannelResponse.success("r", {"x": 1}).unwrap() == {"x": 1}


# ============================================================
# REQUESTS
# ============================================================

class TestRequests:
    """Tests for each request type through a loopback channel."""

    @pytest.mark.asyncio
    async def test_capabilities_tables_and_count(self, connect, make_connection, users_table):
        conn, _ = make_connection()
        async with connect(conn) as client:
            capabilities = await client.request_capabilities()
            tables = await client.request_tables()
            count = await client.request_count("users")

        assert capabilities.ok
        assert "records" in capabilities.payload["features"]
        assert [t["name"] for t in tables.payload] == ["users"]
        assert count.payload == {"table": "users", "count": 3}

    @pytest.mark.asyncio
    async def test_schema(self, connect, make_connection, users_table):
        conn, _ = make_connection()
        async with connect(conn) as client:
            response = await client.request_schema("users")

        assert response.ok
        assert response.payload["primary_key"] == ["id"]
        assert [c["name"] for c in response.payload["columns"]] == ["id", "a", "b", "c", "name"]

    @pytest.mark.asyncio
    async def test_records_complete_the_send_transfer(
        self, connect, make_connection, orchestrator, users_table,
    ):
        conn, _ = make_connection()
        async with connect(conn) as client:
            response = await client.request_records("users", offset=0, limit=10)

        assert response.ok
        assert response.payload["has_more"] is False
        assert [r["id"] for r in response.payload["records"]] == [1, 2, 3]

        sent = orchestrator.list_transfers(direction="send")
        assert len(sent) == 1
        assert sent[0].status == "completed"
        assert sent[0].records_transferred == 3
        assert sent[0].requester_ip == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_full_page_reports_more(self, connect, make_connection, orchestrator, users_table):
        conn, _ = make_connection()
        async with connect(conn) as client:
            first = await client.request_records("users", offset=0, limit=2)
            second = await client.request_records("users", offset=2, limit=2)

        assert first.payload["has_more"] is True
        assert second.payload["has_more"] is False
        sent = orchestrator.list_transfers(direction="send")
        assert len(sent) == 1
        assert sent[0].records_transferred == 3

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_matched_by_ref(self, connect, make_connection, users_table):
        conn, _ = make_connection()
        async with connect(conn) as client:
            count, tables, capabilities = await asyncio.gather(
                client.request_count("users"),
                client.request_tables(),
                client.request_capabilities(),
            )
            assert client.pending_count == 0

        assert count.payload["count"] == 3
        assert isinstance(tables.payload, list)
        assert "version" in capabilities.payload

    @pytest.mark.asyncio
    async def test_malformed_envelope(self, handler, make_connection):
        conn, _ = make_connection()
        context = ChannelContext.for_connection(conn)

        reply = await handler.handle({"request_type": "drop", "ref": "r1"}, context)
        assert reply == {"ref": "r1", "ok": False, "error": "invalid_attributes"}

        reply = await handler.handle("garbage", context)
        assert reply["ok"] is False
        assert reply["ref"] is None

    @pytest.mark.asyncio
    async def test_unauthenticated_context(self, handler):
        reply = await handler.handle({"request_type": "tables", "ref": "r1"}, ChannelContext())
        assert reply["error"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_unreadable_page_gets_error_reply(self, connect, make_connection, registry, db):
        """A page that cannot be read is answered at once and charges no quota."""
        with db.engine.begin() as conn:
            conn.execute(text("CREATE TABLE events (id INTEGER PRIMARY KEY, happened_at DATETIME)"))
            conn.execute(text("INSERT INTO events (id, happened_at) VALUES (1, 'garbage')"))
        connection, _ = make_connection(max_downloads=1)

        async with connect(connection, timeout=5) as client:
            response = await client.request_records("events", limit=10)

        assert response.error == "internal_error"
        assert not response.is_transport_error
        current = registry.get(connection.id)
        assert current.downloads_used == 0
        assert current.records_downloaded == 0


# ============================================================
# POLICY
# ============================================================

class TestPolicy:
    """Tests for table policy, approval, rate limits and quotas."""

    @pytest.mark.asyncio
    async def test_excluded_table(self, connect, make_connection, users_table):
        conn, _ = make_connection(excluded_tables=["users"])
        async with connect(conn) as client:
            tables = await client.request_tables()
            count = await client.request_count("users")

        assert "users" not in [t["name"] for t in tables.payload]
        assert count.error == "table_not_allowed"

    @pytest.mark.asyncio
    async def test_internal_table_and_bad_identifier(self, connect, make_connection):
        conn, _ = make_connection()
        async with connect(conn) as client:
            internal = await client.request_count("sync_connections")
            unsafe = await client.request_records("users; DROP TABLE users")

        assert internal.error == "table_not_allowed"
        assert unsafe.error == "invalid_identifier"

    @pytest.mark.asyncio
    async def test_approval_pending_then_approved(
        self, connect, make_connection, orchestrator, users_table,
    ):
        conn, _ = make_connection(approval_mode="require_approval")
        async with connect(conn) as client:
            first = await client.request_records("users", limit=10)
            assert first.error == "approval_pending"

            waiting = orchestrator.list_pending_approvals()
            assert len(waiting) == 1
            orchestrator.approve(waiting[0], "admin")

            second = await client.request_records("users", limit=10)

        assert second.ok
        assert orchestrator.get(waiting[0].id).status == "completed"

    @pytest.mark.asyncio
    async def test_approval_pending_survives_reconnect(
        self, connect, make_connection, orchestrator, users_table,
    ):
        conn, _ = make_connection(approval_mode="require_approval")
        async with connect(conn) as client:
            await client.request_records("users")
        async with connect(conn) as client:
            again = await client.request_records("users")

        assert again.error == "approval_pending"
        assert len(orchestrator.list_pending_approvals()) == 1

    @pytest.mark.asyncio
    async def test_denied(self, connect, make_connection, orchestrator, users_table):
        conn, _ = make_connection(approval_mode="require_approval")
        async with connect(conn) as client:
            await client.request_records("users")
            orchestrator.deny(orchestrator.list_pending_approvals()[0], "admin", "no")
            response = await client.request_records("users")

        assert response.error == "approval_denied"

    @pytest.mark.asyncio
    async def test_rate_limit(self, connect, make_connection, clock, users_table):
        conn, _ = make_connection(rate_limit_requests_per_minute=2)
        async with connect(conn) as client:
            assert (await client.request_count("users")).ok
            assert (await client.request_count("users")).ok
            limited = await client.request_count("users")
            clock.advance(seconds=61)
            recovered = await client.request_count("users")

        assert limited.error == "rate_limited"
        assert recovered.ok

    @pytest.mark.asyncio
    async def test_download_limit(self, connect, make_connection, registry, users_table):
        conn, _ = make_connection(max_downloads=1)
        async with connect(conn) as client:
            first = await client.request_records("users", limit=10)
            second = await client.request_records("users", limit=10)

        assert first.ok
        assert second.error == "download_limit_reached"
        assert registry.get(conn.id).downloads_used == 1

    @pytest.mark.asyncio
    async def test_record_limit_clamps_page(self, connect, make_connection, registry, users_table):
        conn, _ = make_connection(max_records_total=2)
        async with connect(conn) as client:
            response = await client.request_records("users", limit=10)

        assert len(response.payload["records"]) == 2
        assert registry.get(conn.id).records_downloaded == 2

    @pytest.mark.asyncio
    async def test_suspended_connection(self, connect, make_connection, registry):
        conn, _ = make_connection()
        registry.suspend(conn.id, "admin", "maintenance")
        async with connect(conn) as client:
            response = await client.request_tables()
        assert response.error == "connection_not_active"


class TestRateLimiter:
    """Tests for the sliding window."""

    @pytest.mark.asyncio
    async def test_window_slides(self, clock):
        limiter = RateLimiter(clock, window_seconds=60)

        assert await limiter.acquire("k", 1)
        assert not await limiter.acquire("k", 1)
        assert limiter.remaining("k", 1) == 0
        assert await limiter.acquire("other", 1)

        clock.advance(seconds=60)
        assert await limiter.acquire("k", 1)


# ============================================================
# PAIRING SESSIONS
# ============================================================

class TestSessionChannel:
    """Tests for channels authenticated by a pairing code."""

    @pytest.mark.asyncio
    async def test_session_context(self, handler, broker, orchestrator, users_table):
        session = broker.create_session("send")
        context = ChannelContext.for_session(session.code)

        async with ChannelClient(LoopbackTransport(handler, context)) as client:
            records = await client.request_records("users", limit=10)
            broker.delete_session(session.code)
            refused = await client.request_tables()

        assert records.ok
        assert refused.error == "invalid_code"
        sent = orchestrator.list_transfers(direction="send")
        assert sent[0].session_code == session.code
        assert sent[0].connection_id is None


# ============================================================
# CLIENT
# ============================================================

class TestClient:
    """Tests for timeouts and closed channels."""

    @pytest.mark.asyncio
    async def test_timeout(self):
        transport = SilentTransport()
        client = ChannelClient(transport, timeout=0.05)

        response = await client.request_count("users")

        assert response.error == "timeout"
        assert response.is_transport_error
        assert client.pending_count == 0
        assert len(transport.sent) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_closed(self):
        client = ChannelClient(SilentTransport(), timeout=0.05)
        await client.close()

        response = await client.request_tables()

        assert response.error == "closed"
        assert client.closed


# ============================================================
# REPLICATOR
# ============================================================

class TestReplicator:
    """Tests for whole-table pulls."""

    @pytest.fixture
    def replicator_for(self, connect, receiver_importer, receiver_orchestrator):
        def _make(client, **kwargs):
            return Replicator(
                client,
                receiver_importer,
                receiver_orchestrator,
                config=SyncConfig(sync_page_size=2),
                remote_site_url="https://sender.example",
                retry_delay_seconds=0,
                **kwargs,
            )
        return _make

    @pytest.mark.asyncio
    async def test_pull_creates_then_updates(
        self, connect, make_connection, replicator_for, receiver_importer, users_table,
    ):
        conn, _ = make_connection()
        async with connect(conn) as client:
            replicator = replicator_for(client)
            first = await replicator.transfer("users", "overwrite")
            second = await replicator.transfer("users", "overwrite")

        assert first.succeeded
        assert first.imported.created == 3
        assert first.remote_count == 3
        assert first.local_count == 3
        assert first.reconciled
        assert receiver_importer.inspector.table_exists("users")

        assert second.succeeded
        assert second.imported.updated == 3
        assert second.transfer.direction == "receive"
        assert second.transfer.records_transferred == 3

    @pytest.mark.asyncio
    async def test_missing_table_without_create(
        self, connect, make_connection, replicator_for, users_table,
    ):
        conn, _ = make_connection()
        async with connect(conn) as client:
            result = await replicator_for(client).transfer("users", create_missing=False)

        assert result.status == "failed"
        assert result.transfer.error_message.startswith("table_not_found")

    @pytest.mark.asyncio
    async def test_refusal_is_recorded(self, connect, make_connection, replicator_for, users_table):
        conn, _ = make_connection(excluded_tables=["users"])
        async with connect(conn) as client:
            result = await replicator_for(client).transfer("users")

        assert not result.succeeded
        assert result.status == "failed"
        assert result.transfer.error_message.startswith("table_not_allowed")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, reason", [
        (OperationalError("INSERT INTO users", {}, Exception("disk I/O error")), "persistence_error"),
        (ValueError("unexpected value"), "internal_error"),
    ])
    async def test_local_import_errors_fail_the_transfer(
        self, connect, make_connection, replicator_for, receiver_importer, monkeypatch,
        users_table, error, reason,
    ):
        def broken_import(*args, **kwargs):
            raise error

        monkeypatch.setattr(receiver_importer, "import_records", broken_import)
        conn, _ = make_connection()
        async with connect(conn) as client:
            result = await replicator_for(client).transfer("users")

        assert result.status == "failed"
        assert result.transfer.error_message.startswith(reason)
        assert result.transfer.completed_at is not None

    @pytest.mark.asyncio
    async def test_transfer_all_and_list(self, connect, make_connection, replicator_for, users_table):
        conn, _ = make_connection()
        async with connect(conn) as client:
            replicator = replicator_for(client)
            remote = await replicator.list_remote_tables()
            results = await replicator.transfer_all([t["name"] for t in remote])

        assert list(results) == ["users"]
        assert results["users"].succeeded

    @pytest.mark.asyncio
    async def test_retries_transport_failures(self, replicator_for):
        client = ScriptedClient([
            ChannelResponse.failure("r", "timeout"),
            ChannelResponse.failure("r", "closed"),
            ChannelResponse.success("r", {"table": "users"}),
        ])
        replicator = replicator_for(client, max_page_retries=3)

        payload = await replicator._call(lambda: client.request_schema("users"))

        assert payload == {"table": "users"}
        assert client.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, replicator_for):
        client = ScriptedClient([ChannelResponse.failure("r", "timeout")] * 2)
        replicator = replicator_for(client, max_page_retries=2)

        with pytest.raises(TransportError):
            await replicator._call(lambda: client.request_schema("users"))
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_policy_errors_are_not_retried(self, replicator_for):
        client = ScriptedClient([ChannelResponse.failure("r", "table_not_allowed")])
        replicator = replicator_for(client)

        with pytest.raises(PolicyDeniedError):
            await replicator._call(lambda: client.request_schema("users"))
        assert client.calls == 1
