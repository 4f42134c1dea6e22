"""
Tests for the Connection Registry.

============================================================
PURPOSE
============================================================
- Lifecycle transitions and their illegal-state errors
- Token / password handling (never stored in plaintext)
- Access checks in their documented order
- Atomic quota grants
- Incoming registration modes and the expiry sweep

============================================================
"""

import threading
from datetime import timedelta

import pytest

from connections.registry import ConnectionRegistry
from connections.schemas import ConnectionResponse, ConnectionStatus
from core.exceptions import (
    ConnectionNotFoundError,
    DuplicateConnectionError,
    InvalidTransitionError,
    PolicyDeniedError,
    ValidationError,
)
from core.settings import SyncConfig


# ============================================================
# CRUD
# ============================================================

class TestCreate:
    """Tests for connection creation."""

    def test_defaults_and_token(self, registry, config):
        conn, token = registry.create({
            "name": "hq",
            "site_url": "https://hq.example",
            "direction": "sender",
        })

        assert conn.id is not None
        assert conn.status == ConnectionStatus.PENDING.value
        assert conn.max_records_per_request == config.sync_default_max_records_per_request
        assert conn.rate_limit_requests_per_minute == config.sync_default_rate_limit_per_minute
        assert conn.approval_mode == "auto_approve"
        assert conn.default_conflict_strategy == "skip"
        assert len(token) >= 40

    def test_token_stored_only_as_hash(self, registry):
        conn, token = registry.create({"name": "hq", "site_url": "https://hq.example", "direction": "sender"})

        assert conn.auth_token_hash != token
        assert len(conn.auth_token_hash) == 64
        assert conn.auth_token_prefix == token[:8]
        assert registry.find_by_token(token).id == conn.id
        assert registry.find_by_token("wrong") is None

    def test_supplied_token(self, registry):
        conn, token = registry.create({
            "name": "hq", "site_url": "https://hq.example", "direction": "sender",
            "auth_token": "preshared-token",
        })
        assert token == "preshared-token"
        assert registry.verify_token(conn, "preshared-token")

    def test_duplicate_site_and_direction(self, registry):
        attrs = {"name": "hq", "site_url": "https://hq.example", "direction": "sender"}
        registry.create(attrs)

        with pytest.raises(DuplicateConnectionError):
            registry.create(dict(attrs, name="hq again"))

        # Same site, other direction is fine
        registry.create(dict(attrs, direction="receiver"))

    @pytest.mark.parametrize("attrs,field", [
        ({"site_url": "https://x.example", "direction": "sender"}, "name"),
        ({"name": "x", "site_url": "https://x.example", "direction": "sideways"}, "direction"),
        ({"name": "x", "site_url": "https://x.example", "direction": "sender",
          "allowed_tables": ["users; --"]}, "allowed_tables"),
        ({"name": "x", "site_url": "https://x.example", "direction": "sender",
          "ip_whitelist": ["not-an-ip"]}, "ip_whitelist"),
        ({"name": "x", "site_url": "https://x.example", "direction": "sender",
          "max_downloads": -1}, "max_downloads"),
        ({"name": "x", "site_url": "https://x.example", "direction": "sender",
          "unexpected": 1}, "unexpected"),
    ])
    def test_invalid_attributes(self, registry, attrs, field):
        with pytest.raises(ValidationError) as exc_info:
            registry.create(attrs)
        assert exc_info.value.reason == "invalid_attributes"
        assert any(key.startswith(field) for key in exc_info.value.errors)

    def test_hours_must_be_paired(self, registry):
        with pytest.raises(ValidationError):
            registry.create({
                "name": "x", "site_url": "https://x.example", "direction": "sender",
                "allowed_hours_start": 8,
            })


class TestReadUpdateDelete:
    """Tests for lookups and edits."""

    def test_get_missing(self, registry):
        with pytest.raises(ConnectionNotFoundError) as exc_info:
            registry.get(999)
        assert exc_info.value.reason == "connection_not_found"

    def test_list_filters(self, make_connection, registry):
        make_connection(direction="sender")
        make_connection(direction="receiver", status="pending")

        assert len(registry.list_connections()) == 2
        assert len(registry.list_connections(direction="sender")) == 1
        assert len(registry.list_connections(status="pending")) == 1

    def test_update(self, make_connection, registry):
        conn, _ = make_connection()

        updated = registry.update(conn, {"allowed_tables": ["users"], "max_downloads": 5})

        assert updated.allowed_tables == ["users"]
        assert updated.max_downloads == 5
        assert registry.get(conn.id).allowed_tables == ["users"]

    def test_update_cannot_clear_required_fields(self, make_connection, registry):
        conn, _ = make_connection()
        with pytest.raises(ValidationError):
            registry.update(conn, {"name": None})

    def test_update_rejects_status(self, make_connection, registry):
        """Status only changes through the lifecycle operations."""
        conn, _ = make_connection(status="pending")
        with pytest.raises(ValidationError):
            registry.update(conn, {"status": "active"})

    def test_delete(self, make_connection, registry):
        conn, _ = make_connection()
        registry.delete(conn)
        with pytest.raises(ConnectionNotFoundError):
            registry.get(conn.id)

    def test_find_by_site_url(self, make_connection, registry):
        conn, _ = make_connection(site_url="https://branch.example")
        assert registry.find_by_site_url("https://branch.example").id == conn.id
        assert registry.find_by_site_url("https://branch.example", direction="sender") is None

    def test_response_reads_model_attributes(self, make_connection):
        conn, token = make_connection(allowed_tables=["users"])

        data = ConnectionResponse.model_validate(conn).model_dump(mode="json")

        assert ConnectionResponse.model_config["from_attributes"] is True
        assert data["id"] == conn.id
        assert data["allowed_tables"] == ["users"]
        assert token not in data.values()


# ============================================================
# LIFECYCLE
# ============================================================

class TestLifecycle:
    """Tests for status transitions."""

    def test_approve(self, make_connection, registry, clock):
        conn, _ = make_connection(status="pending")

        approved = registry.approve(conn, approver_id="admin")

        assert approved.status == "active"
        assert approved.approved_by == "admin"
        assert approved.approved_at == clock.now()

    def test_approve_twice_fails(self, make_connection, registry):
        conn, _ = make_connection(status="pending")
        registry.approve(conn, "admin")

        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.approve(conn, "admin")
        assert exc_info.value.reason == "cannot_approve"
        assert exc_info.value.from_state == "active"

    def test_suspend_and_reactivate(self, make_connection, registry):
        conn, _ = make_connection()

        suspended = registry.suspend(conn, "admin", "maintenance")
        assert suspended.status == "suspended"
        assert suspended.suspended_reason == "maintenance"

        reactivated = registry.reactivate(conn)
        assert reactivated.status == "active"
        assert reactivated.suspended_at is None
        assert reactivated.suspended_by is None
        assert reactivated.suspended_reason is None

    def test_suspend_requires_active(self, make_connection, registry):
        conn, _ = make_connection(status="pending")
        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.suspend(conn, "admin")
        assert exc_info.value.reason == "cannot_suspend"

    def test_revoke_is_terminal(self, make_connection, registry):
        conn, _ = make_connection()
        revoked = registry.revoke(conn, "admin", "compromised")
        assert revoked.status == "revoked"
        assert revoked.revoked_reason == "compromised"

        with pytest.raises(InvalidTransitionError):
            registry.reactivate(conn)
        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.revoke(conn, "admin")
        assert exc_info.value.reason == "cannot_revoke"

    def test_transition_on_missing_connection(self, registry):
        with pytest.raises(ConnectionNotFoundError):
            registry.approve(404, "admin")


# ============================================================
# AUTHENTICATION / ACCESS
# ============================================================

class TestValidateConnection:
    """Tests for token validation and the access-check order."""

    def test_valid(self, make_connection, registry):
        conn, token = make_connection()
        assert registry.validate_connection(token, "10.0.0.1").id == conn.id

    def test_invalid_token(self, make_connection, registry):
        make_connection()
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection("not-a-token")
        assert exc_info.value.reason == "invalid_token"

    def test_missing_token(self, registry):
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection(None)
        assert exc_info.value.reason == "invalid_token"

    def test_not_active_is_checked_first(self, make_connection, registry, clock):
        """A suspended, expired, IP-restricted connection reports connection_not_active."""
        conn, token = make_connection(
            expires_at=clock.now() - timedelta(hours=1),
            ip_whitelist=["10.0.0.0/8"],
        )
        registry.suspend(conn, "admin")

        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection(token, "192.168.1.1")
        assert exc_info.value.reason == "connection_not_active"

    def test_expired(self, make_connection, registry, clock):
        _, token = make_connection(expires_at=clock.now() + timedelta(hours=1))
        clock.advance(hours=2)

        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection(token)
        assert exc_info.value.reason == "connection_expired"

    def test_ip_whitelist(self, make_connection, registry):
        _, token = make_connection(ip_whitelist=["10.0.0.0/24", "192.168.1.7"])

        registry.validate_connection(token, "10.0.0.42")
        registry.validate_connection(token, "192.168.1.7")
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection(token, "192.168.1.8")
        assert exc_info.value.reason == "ip_not_allowed"

    def test_allowed_hours_wrap_midnight(self, make_connection, registry, clock):
        """22 -> 6 window: noon is outside, 23:00 and 06:00 are inside."""
        _, token = make_connection(allowed_hours_start=22, allowed_hours_end=6)

        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection(token)
        assert exc_info.value.reason == "outside_allowed_hours"

        clock.advance(hours=11)
        registry.validate_connection(token)
        clock.advance(hours=7)
        registry.validate_connection(token)

    def test_download_limit_reported(self, make_connection, registry):
        conn, token = make_connection(max_downloads=1)
        registry.grant_download(conn, 10)

        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.validate_connection(token)
        assert exc_info.value.reason == "download_limit_reached"


class TestPasswords:
    """Tests for download passwords."""

    def test_password_hashed_with_salt(self, make_connection, registry):
        conn, _ = make_connection(download_password="hunter2")
        other, _ = make_connection(download_password="hunter2")

        assert conn.download_password_hash.startswith("pbkdf2_sha256$")
        assert "hunter2" not in conn.download_password_hash
        assert conn.download_password_hash != other.download_password_hash

    def test_verify(self, make_connection, registry):
        conn, _ = make_connection(download_password="hunter2")

        assert registry.verify_download_password(conn, "hunter2")
        assert not registry.verify_download_password(conn, "hunter3")
        assert not registry.verify_download_password(conn, None)

    def test_no_password_always_verifies(self, make_connection, registry):
        conn, _ = make_connection()
        assert registry.verify_download_password(conn, None)

    def test_set_and_clear(self, make_connection, registry):
        conn, _ = make_connection()

        conn = registry.set_download_password(conn, "s3cret")
        assert registry.verify_download_password(conn, "s3cret")

        conn = registry.set_download_password(conn, None)
        assert registry.verify_download_password(conn, None)

    def test_regenerate_token(self, make_connection, registry):
        _, old_token = make_connection()
        conn = registry.find_by_token(old_token)

        new_token = registry.regenerate_token(conn)

        assert registry.find_by_token(old_token) is None
        assert registry.find_by_token(new_token).id == conn.id


# ============================================================
# QUOTAS
# ============================================================

class TestGrantDownload:
    """Tests for atomic quota consumption."""

    def test_single_download_allowed_once(self, make_connection, registry):
        """max_downloads=1: exactly one grant, then refusal."""
        conn, _ = make_connection(max_downloads=1)

        assert registry.grant_download(conn, 100) == 100
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.grant_download(conn, 100)
        assert exc_info.value.reason == "download_limit_reached"

        current = registry.get(conn.id)
        assert current.downloads_used == 1
        assert current.records_downloaded == 100

    def test_concurrent_requests_share_one_download(self, make_connection, registry):
        """max_downloads=1 under contention: one grant, every other caller refused."""
        conn, _ = make_connection(max_downloads=1)
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def request():
            barrier.wait()
            try:
                outcome = registry.grant_download(conn.id, 10)
            except PolicyDeniedError as e:
                outcome = e.reason
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=request) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(outcomes) == workers
        assert outcomes.count(10) == 1
        assert sorted(o for o in outcomes if o != 10) == ["download_limit_reached"] * (workers - 1)
        current = registry.get(conn.id)
        assert current.downloads_used == 1
        assert current.records_downloaded == 10

    def test_grant_clamped_to_remaining_records(self, make_connection, registry):
        conn, _ = make_connection(max_records_total=150)

        assert registry.grant_download(conn, 100) == 100
        assert registry.grant_download(conn, 100) == 50
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.grant_download(conn, 1)
        assert exc_info.value.reason == "record_limit_reached"

    def test_grant_requires_active(self, make_connection, registry):
        conn, _ = make_connection(status="pending")
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.grant_download(conn, 1)
        assert exc_info.value.reason == "connection_not_active"

    def test_grant_rejects_non_positive(self, make_connection, registry):
        conn, _ = make_connection()
        with pytest.raises(ValidationError):
            registry.grant_download(conn, 0)

    def test_remaining_and_stats(self, make_connection, registry):
        conn, _ = make_connection(max_downloads=3, max_records_total=1000)
        registry.grant_download(conn, 10)

        assert registry.remaining_downloads(conn) == 2
        assert registry.remaining_records(conn) == 990
        stats = registry.stats(conn)
        assert stats["downloads_used"] == 1
        assert stats["records_downloaded"] == 10

    def test_unlimited(self, make_connection, registry):
        conn, _ = make_connection()
        assert registry.remaining_downloads(conn) is None
        assert registry.remaining_records(conn) is None

    def test_record_transfer_totals(self, make_connection, registry, clock):
        conn, _ = make_connection()
        registry.record_transfer(conn, records=30, bytes_count=2048)

        current = registry.get(conn.id)
        assert current.total_transfers == 1
        assert current.total_records_transferred == 30
        assert current.total_bytes_transferred == 2048
        assert current.last_transfer_at == clock.now()


# ============================================================
# INCOMING REGISTRATION
# ============================================================

class TestAcceptIncoming:
    """Tests for registration requests from remote sites."""

    ATTRS = {"name": "branch", "site_url": "https://branch.example", "direction": "receiver"}

    def _registry(self, db, clock, **settings):
        return ConnectionRegistry(db, config=SyncConfig(**settings), clock=clock)

    def test_require_approval_creates_pending(self, db, clock):
        registry = self._registry(db, clock, sync_incoming_mode="require_approval")
        conn, token = registry.accept_incoming(self.ATTRS)
        assert conn.status == "pending"
        assert token

    def test_auto_accept_creates_active(self, db, clock):
        registry = self._registry(db, clock, sync_incoming_mode="auto_accept")
        conn, _ = registry.accept_incoming(self.ATTRS)
        assert conn.status == "active"
        assert conn.created_by == "incoming"

    def test_deny_all(self, db, clock):
        registry = self._registry(db, clock, sync_incoming_mode="deny_all")
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.accept_incoming(self.ATTRS)
        assert exc_info.value.reason == "incoming_denied"
        assert registry.list_connections() == []

    def test_require_password(self, db, clock):
        registry = self._registry(
            db, clock,
            sync_incoming_mode="require_password",
            sync_incoming_password="letmein",
        )
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.accept_incoming(self.ATTRS, password="nope")
        assert exc_info.value.reason == "invalid_password"

        conn, _ = registry.accept_incoming(self.ATTRS, password="letmein")
        assert conn.status == "active"

    def test_require_password_without_configured_password(self, db, clock):
        registry = self._registry(db, clock, sync_incoming_mode="require_password")
        with pytest.raises(PolicyDeniedError):
            registry.accept_incoming(self.ATTRS, password="anything")

    def test_sync_disabled(self, db, clock):
        registry = self._registry(db, clock, sync_enabled=False, sync_incoming_mode="auto_accept")
        with pytest.raises(PolicyDeniedError) as exc_info:
            registry.accept_incoming(self.ATTRS)
        assert exc_info.value.reason == "sync_disabled"


# ============================================================
# MAINTENANCE
# ============================================================

class TestExpiry:
    """Tests for the connection expiry sweep."""

    def test_expire_connections_once(self, make_connection, registry, clock):
        expiring, _ = make_connection(expires_at=clock.now() + timedelta(minutes=30))
        make_connection()
        clock.advance(hours=1)

        assert registry.expire_connections() == 1
        assert registry.expire_connections() == 0
        assert registry.get(expiring.id).status == "expired"

    def test_exhausted_quota_expires(self, make_connection, registry):
        conn, _ = make_connection(max_downloads=1)
        registry.grant_download(conn, 1)

        assert registry.expire_connections() == 1
        assert registry.get(conn.id).status == "expired"

    def test_expiring_soon(self, make_connection, registry, clock):
        soon, _ = make_connection(expires_at=clock.now() + timedelta(hours=2))
        make_connection(expires_at=clock.now() + timedelta(days=3))

        assert [c.id for c in registry.expiring_soon(hours=24)] == [soon.id]


# ============================================================
# PEER MIRRORING
# ============================================================

class TestPeerMirroring:
    """Tests for listeners and changes requested by the peer."""

    def test_local_changes_reach_listeners(self, make_connection, registry):
        events = []
        registry.add_listener(lambda conn, event: events.append((conn.id, event)))
        conn, _ = make_connection(status="pending")

        registry.approve(conn, "admin")
        registry.suspend(conn, "admin")
        registry.reactivate(conn)
        registry.revoke(conn, "admin")
        registry.delete(conn)

        assert events == [
            (conn.id, "active"),
            (conn.id, "suspended"),
            (conn.id, "active"),
            (conn.id, "revoked"),
            (conn.id, "deleted"),
        ]

    def test_remote_changes_are_not_echoed(self, make_connection, registry):
        events = []
        registry.add_listener(lambda conn, event: events.append(event))
        conn, _ = make_connection(status="pending")

        approved = registry.apply_remote_status(conn, "active")
        suspended = registry.apply_remote_status(conn, "suspended")
        registry.apply_remote_delete(conn)

        assert approved.approved_by == "remote"
        assert suspended.suspended_by == "remote"
        assert events == []
        with pytest.raises(ConnectionNotFoundError):
            registry.get(conn.id)

    def test_remote_status_already_applied(self, make_connection, registry):
        conn, _ = make_connection()
        assert registry.apply_remote_status(conn, "active").status == "active"

    def test_remote_status_cannot_revive(self, make_connection, registry):
        conn, _ = make_connection()
        registry.apply_remote_status(conn, "revoked")

        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.apply_remote_status(conn, "active")
        assert exc_info.value.reason == "cannot_reactivate"

    @pytest.mark.parametrize("status", ["expired", "pending", "gone"])
    def test_remote_status_rejects_unmirrored(self, make_connection, registry, status):
        conn, _ = make_connection()
        with pytest.raises(ValidationError):
            registry.apply_remote_status(conn, status)

    def test_find_shared(self, make_connection, registry):
        conn, _ = make_connection(direction="sender", site_url="https://branch.example")

        assert registry.find_shared("https://branch.example", conn.auth_token_hash).id == conn.id
        assert registry.find_shared(None, conn.auth_token_hash, direction="sender").id == conn.id
        assert registry.find_shared("https://other.example", conn.auth_token_hash) is None
        assert registry.find_shared(None, conn.auth_token_hash, direction="receiver") is None
        assert registry.find_shared("https://branch.example", "0" * 64) is None
