"""
Tests for the Connection Notifier against a peer site.

============================================================
PURPOSE
============================================================
The local site uses the default sender database; the peer is a
ChannelServer over the receiver database, reached through the
aiohttp test server.

- registration, status mirroring and delete reach the peer
- the peer's own changes are not echoed back
- an unreachable peer is reported, never raised

============================================================
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import test_utils

from channel.handler import RequestHandler
from channel.server import ChannelServer, create_channel_app
from connections.notifier import ConnectionNotifier, NotifyOutcome
from connections.registry import ConnectionRegistry
from connections.security import generate_auth_token
from core.settings import SyncConfig
from sync_data.data_exporter import DataExporter
from transfers.orchestrator import TransferOrchestrator


LOCAL_URL = "https://hq.example"


def _peer_app(registry: ConnectionRegistry, db, clock):
    orchestrator = TransferOrchestrator(db, registry=registry, clock=clock)
    handler = RequestHandler(registry, orchestrator, DataExporter(db))
    return create_channel_app(ChannelServer(handler, registry))


def _base_url(server: test_utils.TestServer) -> str:
    return str(server.make_url("/")).rstrip("/")


@pytest.fixture
def peer_registry(receiver_db, clock):
    return ConnectionRegistry(
        receiver_db, config=SyncConfig(sync_incoming_mode="auto_accept"), clock=clock,
    )


@pytest.fixture
def peer_app(peer_registry, receiver_db, clock):
    return _peer_app(peer_registry, receiver_db, clock)


@pytest_asyncio.fixture
async def notifier():
    notifier = ConnectionNotifier(site_url=LOCAL_URL, timeout_seconds=5)
    yield notifier
    await notifier.close()


# ============================================================
# REGISTRATION
# ============================================================

class TestRegistration:
    """Tests for notify_remote_site."""

    @pytest.mark.asyncio
    async def test_peer_registers_receiver_half(self, notifier, peer_app, peer_registry, make_connection):
        async with test_utils.TestServer(peer_app) as server:
            conn, token = make_connection(direction="sender", site_url=_base_url(server))
            result = await notifier.notify_remote_site(conn, token)

        assert result.outcome is NotifyOutcome.REGISTERED
        assert result.http_status == 201
        mirrored = peer_registry.find_by_site_url(LOCAL_URL, direction="receiver")
        assert mirrored.status == "active"
        assert mirrored.auth_token_hash == conn.auth_token_hash
        assert peer_registry.find_by_token(token).id == mirrored.id

    @pytest.mark.asyncio
    async def test_peer_holds_it_for_approval(self, notifier, receiver_db, clock, make_connection):
        registry = ConnectionRegistry(
            receiver_db, config=SyncConfig(sync_incoming_mode="require_approval"), clock=clock,
        )
        async with test_utils.TestServer(_peer_app(registry, receiver_db, clock)) as server:
            conn, token = make_connection(direction="sender", site_url=_base_url(server))
            result = await notifier.notify_remote_site(conn, token)

        assert result.outcome is NotifyOutcome.PENDING
        assert registry.find_by_token(token).status == "pending"

    @pytest.mark.asyncio
    async def test_peer_refuses(self, notifier, receiver_db, clock, make_connection):
        registry = ConnectionRegistry(
            receiver_db, config=SyncConfig(sync_incoming_mode="deny_all"), clock=clock,
        )
        async with test_utils.TestServer(_peer_app(registry, receiver_db, clock)) as server:
            conn, token = make_connection(direction="sender", site_url=_base_url(server))
            result = await notifier.notify_remote_site(conn, token)

        assert result.outcome is NotifyOutcome.FAILED
        assert result.http_status == 403
        assert result.error == "incoming_denied"
        assert not result.delivered

    @pytest.mark.asyncio
    async def test_receiver_connections_are_skipped(self, notifier, make_connection):
        conn, token = make_connection(direction="receiver")
        result = await notifier.notify_remote_site(conn, token)
        assert result.outcome is NotifyOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_without_own_site_url(self, make_connection):
        notifier = ConnectionNotifier()
        conn, token = make_connection(direction="sender")

        assert (await notifier.notify_remote_site(conn, token)).outcome is NotifyOutcome.SKIPPED
        assert (await notifier.notify_status_change(conn, "suspended")).outcome is NotifyOutcome.SKIPPED


# ============================================================
# STATUS AND DELETE
# ============================================================

class TestMirroring:
    """Tests for queued notices from registry changes."""

    @pytest.mark.asyncio
    async def test_status_changes_reach_the_peer(
        self, notifier, peer_app, peer_registry, registry, make_connection,
    ):
        peer_events = []
        peer_registry.add_listener(lambda conn, event: peer_events.append(event))
        notifier.attach(registry)

        async with test_utils.TestServer(peer_app) as server:
            conn, token = make_connection(direction="sender", site_url=_base_url(server))
            await notifier.notify_remote_site(conn, token)
            mirrored = peer_registry.find_by_token(token)

            registry.suspend(conn.id, "admin", "maintenance")
            assert notifier.pending == 1
            suspended = await notifier.flush()
            after_suspend = peer_registry.get(mirrored.id)

            registry.reactivate(conn.id)
            reactivated = await notifier.flush()

        assert [r.outcome for r in suspended] == [NotifyOutcome.UPDATED]
        assert after_suspend.status == "suspended"
        assert after_suspend.suspended_by == "remote"
        assert [r.outcome for r in reactivated] == [NotifyOutcome.UPDATED]
        assert peer_registry.get(mirrored.id).status == "active"
        assert notifier.pending == 0
        assert peer_events == []

    @pytest.mark.asyncio
    async def test_delete_and_verify(self, notifier, peer_app, peer_registry, registry, make_connection):
        notifier.attach(registry)

        async with test_utils.TestServer(peer_app) as server:
            conn, token = make_connection(direction="sender", site_url=_base_url(server))
            await notifier.notify_remote_site(conn, token)
            before = await notifier.verify_connection(conn)

            registry.delete(conn.id)
            deleted = await notifier.flush()
            after = await notifier.verify_connection(conn)

        assert before.outcome is NotifyOutcome.EXISTS
        assert [r.outcome for r in deleted] == [NotifyOutcome.DELETED]
        assert peer_registry.find_by_token(token) is None
        assert after.outcome is NotifyOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_connection_is_not_found(self, notifier, peer_app, make_connection):
        async with test_utils.TestServer(peer_app) as server:
            conn, _ = make_connection(direction="sender", site_url=_base_url(server))
            result = await notifier.notify_status_change(conn, "suspended")

        assert result.outcome is NotifyOutcome.NOT_FOUND
        assert result.http_status == 404

    @pytest.mark.asyncio
    async def test_query_sender_status(self, notifier, peer_app, peer_registry, make_connection):
        token = generate_auth_token()
        peer_registry.create({
            "name": "hq",
            "site_url": "https://somewhere-else.example",
            "direction": "sender",
            "status": "pending",
            "auth_token": token,
        })

        async with test_utils.TestServer(peer_app) as server:
            local, _ = make_connection(direction="receiver", site_url=_base_url(server), auth_token=token)
            result = await notifier.query_sender_status(local)

        assert result.outcome is NotifyOutcome.STATUS
        assert result.data["status"] == "pending"
        assert result.data["name"] == "hq"

    @pytest.mark.asyncio
    async def test_offline_peer(self, notifier, make_connection):
        conn, _ = make_connection(direction="sender", site_url="http://127.0.0.1:1")

        result = await notifier.notify_status_change(conn, "suspended")

        assert result.outcome is NotifyOutcome.OFFLINE
        assert result.error
        assert not result.delivered

    def test_only_mirrored_events_are_queued(self, make_connection):
        notifier = ConnectionNotifier(site_url=LOCAL_URL)
        conn, _ = make_connection()

        notifier.enqueue(conn, "expired")
        notifier.enqueue(conn, "pending")
        notifier.enqueue(conn, "revoked")
        notifier.enqueue(conn, "deleted")

        assert notifier.pending == 2

    @pytest.mark.asyncio
    async def test_run_forever_flushes(self, notifier, peer_app, peer_registry, registry, make_connection):
        notifier.attach(registry)

        async with test_utils.TestServer(peer_app) as server:
            conn, token = make_connection(direction="sender", site_url=_base_url(server))
            await notifier.notify_remote_site(conn, token)
            task = asyncio.create_task(notifier.run_forever(interval_seconds=0.01))

            await asyncio.to_thread(registry.revoke, conn.id, "admin", "closing")
            for _ in range(500):
                if peer_registry.find_by_token(token).status == "revoked":
                    break
                await asyncio.sleep(0.01)

            notifier.stop()
            await asyncio.wait_for(task, timeout=5)

        assert peer_registry.find_by_token(token).status == "revoked"
        assert notifier.pending == 0
