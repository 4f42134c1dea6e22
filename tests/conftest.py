"""
Shared fixtures.

Every test gets its own SQLite file database with the bookkeeping
tables created, and a MockClock pinned to a fixed instant.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from connections.registry import ConnectionRegistry
from core.clock import MockClock
from core.settings import SyncConfig
from database.engine import Database
from pairing.broker import SessionBroker
from sync_data.data_exporter import DataExporter
from sync_data.data_importer import DataImporter
from sync_data.schema_inspector import SchemaInspector
from transfers.orchestrator import TransferOrchestrator


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

USERS = [
    {"id": 1, "a": 1, "b": 2, "c": None, "name": "alice"},
    {"id": 2, "a": 3, "b": 4, "c": 5, "name": "bob"},
    {"id": 3, "a": None, "b": None, "c": None, "name": "O'Brien"},
]


def _make_database(path) -> Database:
    db = Database(f"sqlite:///{path}")
    db.create_all()
    return db


def _create_users(db: Database, rows=()) -> None:
    with db.engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE users ("
            "id INTEGER PRIMARY KEY, a INTEGER, b INTEGER, c INTEGER, name VARCHAR(100))"
        ))
        for row in rows:
            conn.execute(
                text("INSERT INTO users (id, a, b, c, name) VALUES (:id, :a, :b, :c, :name)"),
                row,
            )


# ============================================================
# CORE
# ============================================================

@pytest.fixture
def clock():
    """Clock pinned to 2026-01-15 12:00 UTC."""
    return MockClock(NOW)


@pytest.fixture
def config():
    return SyncConfig()


# ============================================================
# SENDER SIDE (default node)
# ============================================================

@pytest.fixture
def db(tmp_path):
    database = _make_database(tmp_path / "sender.db")
    yield database
    database.dispose()


@pytest.fixture
def registry(db, config, clock):
    return ConnectionRegistry(db, config=config, clock=clock)


@pytest.fixture
def orchestrator(db, registry, config, clock):
    return TransferOrchestrator(db, registry=registry, config=config, clock=clock)


@pytest.fixture
def inspector(db):
    return SchemaInspector(db)


@pytest.fixture
def exporter(db, inspector):
    return DataExporter(db, inspector)


@pytest.fixture
def importer(db, inspector):
    return DataImporter(db, inspector)


@pytest.fixture
def broker(clock):
    return SessionBroker(clock=clock)


@pytest.fixture
def users_table(db):
    """users(id PK, a, b, c, name) holding the three USERS rows."""
    _create_users(db, USERS)
    return "users"


@pytest.fixture
def empty_users_table(db):
    _create_users(db)
    return "users"


@pytest.fixture
def make_connection(registry):
    """Create an active connection with overridable attributes."""
    counter = {"n": 0}

    def _make(**attrs):
        counter["n"] += 1
        data = {
            "name": f"site-{counter['n']}",
            "site_url": f"https://site-{counter['n']}.example",
            "direction": "receiver",
            "status": "active",
        }
        data.update(attrs)
        return registry.create(data)

    return _make


# ============================================================
# RECEIVER SIDE
# ============================================================

@pytest.fixture
def receiver_db(tmp_path):
    database = _make_database(tmp_path / "receiver.db")
    yield database
    database.dispose()


@pytest.fixture
def receiver_orchestrator(receiver_db, config, clock):
    return TransferOrchestrator(receiver_db, config=config, clock=clock)


@pytest.fixture
def receiver_importer(receiver_db):
    return DataImporter(receiver_db)
