"""
Tests for the Schema Inspector.
"""

import pytest
from sqlalchemy import text

from core.exceptions import InvalidIdentifierError, TableNotFoundError
from sync_data.schema_inspector import SchemaInspector, translate_type
from sync_data.types import ColumnSchema, TableSchema


# ============================================================
# LISTING
# ============================================================

class TestListTables:
    """Tests for table enumeration."""

    def test_lists_user_tables_with_counts(self, inspector, users_table):
        """User tables are listed with exact counts."""
        tables = {t.name: t for t in inspector.list_tables()}
        assert tables["users"].row_count == 3
        assert tables["users"].estimated is False

    def test_internal_tables_hidden_by_default(self, inspector, users_table):
        """The engine's own sync_ tables are listed only on request."""
        names = [t.name for t in inspector.list_tables()]
        assert "sync_connections" not in names
        assert "sync_transfers" not in names

        names = [t.name for t in inspector.list_tables(include_internal=True)]
        assert "sync_connections" in names

    def test_denylisted_tables_never_listed(self, db, inspector):
        """Migration and session tables stay hidden even with include_internal."""
        with db.engine.begin() as conn:
            conn.execute(text("CREATE TABLE schema_migrations (version BIGINT PRIMARY KEY)"))
            conn.execute(text("CREATE TABLE sessions (id INTEGER PRIMARY KEY)"))

        names = [t.name for t in inspector.list_tables(include_internal=True)]
        assert "schema_migrations" not in names
        assert "sessions" not in names

    def test_sorted_by_name(self, db, inspector, users_table):
        with db.engine.begin() as conn:
            conn.execute(text("CREATE TABLE accounts (id INTEGER PRIMARY KEY)"))
        names = [t.name for t in inspector.list_tables()]
        assert names == sorted(names)
        assert names.index("accounts") < names.index("users")

    def test_is_listable(self, inspector):
        assert inspector.is_listable("users")
        assert not inspector.is_listable("sync_settings")
        assert inspector.is_listable("sync_settings", include_internal=True)
        assert not inspector.is_listable("alembic_version", include_internal=True)


# ============================================================
# METADATA
# ============================================================

class TestGetSchema:
    """Tests for column metadata."""

    def test_describes_columns_and_primary_key(self, inspector, users_table):
        schema = inspector.get_schema("users")

        assert schema.table == "users"
        assert schema.primary_key == ["id"]
        assert schema.column_names == ["id", "a", "b", "c", "name"]

        id_col = schema.column("id")
        assert id_col.type == "integer"
        assert id_col.primary_key is True

        name_col = schema.column("name")
        assert name_col.type == "character varying"
        assert name_col.max_length == 100
        assert name_col.nullable is True

    def test_wire_form(self, inspector, users_table):
        data = inspector.get_schema("users").to_dict()
        assert data["primary_key"] == ["id"]
        assert {"name": "a", "type": "integer", "nullable": True, "primary_key": False} in data["columns"]

    def test_missing_table(self, inspector):
        with pytest.raises(TableNotFoundError) as exc_info:
            inspector.get_schema("nope")
        assert exc_info.value.reason == "table_not_found"

    def test_unsafe_name_rejected_before_lookup(self, inspector):
        with pytest.raises(InvalidIdentifierError):
            inspector.get_schema("users; DROP TABLE users")

    def test_primary_key_and_counts(self, inspector, users_table):
        assert inspector.get_primary_key("users") == ["id"]
        assert inspector.get_local_count("users") == 3
        assert inspector.table_exists("users")
        assert not inspector.table_exists("orders")


# ============================================================
# DDL
# ============================================================

class TestCreateTable:
    """Tests for DDL synthesized from a remote description."""

    @pytest.fixture
    def remote_schema(self):
        return TableSchema.from_dict({
            "table": "events",
            "columns": [
                {"name": "id", "type": "bigint", "nullable": False, "primary_key": True},
                {"name": "title", "type": "character varying", "max_length": 50},
                {"name": "happened_at", "type": "timestamp with time zone"},
                {"name": "payload", "type": "jsonb"},
                {"name": "amount", "type": "numeric", "precision": 10, "scale": 2},
            ],
            "primary_key": ["id"],
        })

    def test_build_create_table_for_sqlite(self, inspector, remote_schema):
        ddl = inspector.build_create_table("events", remote_schema)

        assert ddl.startswith('CREATE TABLE IF NOT EXISTS "events" (')
        assert '"id" INTEGER NOT NULL' in ddl
        assert '"title" varchar(50)' in ddl
        assert '"happened_at" TIMESTAMP' in ddl
        assert '"payload" JSON' in ddl
        assert '"amount" numeric(10,2)' in ddl
        assert 'PRIMARY KEY ("id")' in ddl

    def test_create_table(self, inspector, remote_schema):
        inspector.create_table("events", remote_schema)

        assert inspector.table_exists("events")
        assert inspector.get_local_count("events") == 0
        assert inspector.get_primary_key("events") == ["id"]

    def test_create_table_is_idempotent(self, inspector, remote_schema):
        inspector.create_table("events", remote_schema)
        inspector.create_table("events", remote_schema)
        assert inspector.table_exists("events")

    def test_unsafe_column_name_rejected(self):
        with pytest.raises(InvalidIdentifierError):
            TableSchema.from_dict({"table": "t", "columns": [{"name": "x; --", "type": "text"}]})

    def test_unsafe_type_rejected(self, inspector):
        schema = TableSchema(
            table="t",
            columns=[ColumnSchema(name="x", type="integer); DROP TABLE users; --")],
        )
        with pytest.raises(InvalidIdentifierError):
            inspector.build_create_table("t", schema)

    def test_empty_schema_rejected(self, inspector):
        with pytest.raises(TableNotFoundError):
            inspector.build_create_table("t", TableSchema(table="t"))


class TestTranslateType:
    """Tests for type vocabulary translation."""

    def test_serial_on_postgresql(self):
        col = ColumnSchema(name="id", type="bigint")
        assert translate_type(col, "postgresql", auto_increment=True) == "bigserial"
        assert translate_type(ColumnSchema(name="id", type="integer"), "postgresql", True) == "serial"

    def test_postgresql_keeps_native_names(self):
        assert translate_type(ColumnSchema(name="p", type="jsonb"), "postgresql") == "jsonb"
        assert translate_type(ColumnSchema(name="t", type="timestamp with time zone"), "postgresql") == "timestamptz"
        assert translate_type(ColumnSchema(name="t", type="timestamp without time zone"), "postgresql") == "timestamp"

    def test_varchar_default_length(self):
        assert translate_type(ColumnSchema(name="s", type="character varying"), "postgresql") == "varchar(255)"

    def test_arrays_become_json_on_sqlite(self):
        assert translate_type(ColumnSchema(name="tags", type="text[]"), "sqlite") == "JSON"


def test_inspector_schema_name_is_validated(db):
    """A configured schema name goes through the same gate."""
    with pytest.raises(InvalidIdentifierError):
        SchemaInspector(db, schema="public; --")
