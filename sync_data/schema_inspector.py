"""
Schema Inspector.

============================================================
PURPOSE
============================================================
Enumerates tables, row counts and column metadata on this node
and materializes tables from a remote schema description.

- list_tables: denylist + internal-prefix filtering
- get_schema / get_primary_key / table_exists
- create_table: DDL synthesized from a TableSchema
- get_local_count: exact count for reconciliation

Table/column names pass escape_identifier before they reach SQL.
Declared type strings from a peer are checked against a strict
type pattern before they reach DDL.

============================================================
"""

import logging
import re
from typing import Iterable, List, Optional

from sqlalchemy import MetaData, Table, inspect, text, types as sqltypes
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from core.exceptions import InvalidIdentifierError, PersistenceError, TableNotFoundError
from database.engine import Database
from sync_data.codec import SafeIdentifier, escape_identifier, is_valid_identifier
from sync_data.types import ColumnSchema, TableInfo, TableSchema


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

EXCLUDED_TABLES = frozenset({
    "schema_migrations",
    "alembic_version",
    "oban_jobs",
    "oban_peers",
    "user_tokens",
    "sessions",
})
"""Job-queue, migration and session/token tables never listed."""

INTERNAL_PREFIXES = ("sync_", "pg_", "oban_", "sqlite_")
"""Tables with these prefixes are listed only on request."""

_TYPE_PATTERN = re.compile(
    r"[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+\s*(,\s*\d+\s*)?\))?(\[\])?"
)

_INTEGER_TYPES = {"integer", "int", "int4", "bigint", "int8", "smallint", "int2"}


# ============================================================
# TYPE TRANSLATION
# ============================================================

def describe_type(col_type: sqltypes.TypeEngine, dialect: str) -> ColumnSchema:
    """
    Map a reflected SQLAlchemy type to introspection vocabulary.

    Returns a ColumnSchema carrying only type/length/precision.
    """
    length = precision = scale = None

    if isinstance(col_type, sqltypes.Boolean):
        name = "boolean"
    elif isinstance(col_type, sqltypes.BigInteger):
        name = "bigint"
    elif isinstance(col_type, sqltypes.SmallInteger):
        name = "smallint"
    elif isinstance(col_type, sqltypes.Integer):
        name = "integer"
    elif isinstance(col_type, sqltypes.Float):
        name = "double precision"
    elif isinstance(col_type, sqltypes.Numeric):
        name = "numeric"
        precision, scale = col_type.precision, col_type.scale
    elif isinstance(col_type, sqltypes.DateTime):
        name = "timestamp with time zone" if col_type.timezone else "timestamp without time zone"
    elif isinstance(col_type, sqltypes.Date):
        name = "date"
    elif isinstance(col_type, sqltypes.Time):
        name = "time without time zone"
    elif isinstance(col_type, sqltypes.JSON):
        name = "jsonb" if dialect == "postgresql" else "json"
    elif isinstance(col_type, sqltypes.LargeBinary):
        name = "bytea"
    elif isinstance(col_type, sqltypes.Uuid):
        name = "uuid"
    elif isinstance(col_type, sqltypes.Text):
        name = "text"
    elif isinstance(col_type, sqltypes.String):
        name = "character varying" if col_type.length else "text"
        length = col_type.length
    else:
        name = str(col_type).lower()

    return ColumnSchema(name="", type=name, max_length=length, precision=precision, scale=scale)


def translate_type(column: ColumnSchema, dialect: str, auto_increment: bool = False) -> str:
    """
    Translate introspection vocabulary to local DDL vocabulary.

    Raises:
        InvalidIdentifierError: if the declared type is not a plain
            type name, optional (n[,m]) and optional [].
    """
    declared = (column.type or "").strip()
    if not _TYPE_PATTERN.fullmatch(declared):
        raise InvalidIdentifierError(declared)

    base = declared.lower()

    if auto_increment and base in _INTEGER_TYPES:
        if dialect == "postgresql":
            return "bigserial" if base in ("bigint", "int8") else "serial"
        return "INTEGER"

    if base == "character varying":
        return f"varchar({int(column.max_length or 255)})"
    if base.startswith("character varying("):
        return "varchar" + base[len("character varying"):]
    if base == "timestamp without time zone":
        return "timestamp"
    if base == "timestamp with time zone":
        return "timestamptz" if dialect == "postgresql" else "TIMESTAMP"
    if base == "time without time zone":
        return "time"
    if base == "numeric" and column.precision:
        if column.scale is not None:
            return f"numeric({int(column.precision)},{int(column.scale)})"
        return f"numeric({int(column.precision)})"

    if dialect == "sqlite":
        sqlite_types = {
            "jsonb": "JSON",
            "json": "JSON",
            "uuid": "CHAR(36)",
            "bytea": "BLOB",
            "double precision": "REAL",
            "boolean": "BOOLEAN",
        }
        if base in sqlite_types:
            return sqlite_types[base]
        if base.endswith("[]"):
            return "JSON"

    return declared


# ============================================================
# SCHEMA INSPECTOR
# ============================================================

class SchemaInspector:
    """
    Table metadata for one node.

    Usage:
        inspector = SchemaInspector(db)
        for info in inspector.list_tables():
            print(info.name, info.row_count)
    """

    def __init__(
        self,
        db: Database,
        schema: Optional[str] = None,
        excluded_tables: Iterable[str] = EXCLUDED_TABLES,
        internal_prefixes: Iterable[str] = INTERNAL_PREFIXES,
    ):
        self._db = db
        self._schema = escape_identifier(schema) if schema else None
        self._excluded = frozenset(excluded_tables)
        self._internal_prefixes = tuple(internal_prefixes)

    @property
    def dialect(self) -> str:
        return self._db.dialect

    def _qualified(self, table: SafeIdentifier) -> str:
        if self._schema:
            return f"{self._schema.quoted}.{table.quoted}"
        return table.quoted

    def is_listable(self, table: str, include_internal: bool = False) -> bool:
        """Whether a table may appear in listings and be served."""
        if table in self._excluded:
            return False
        if not include_internal and table.startswith(self._internal_prefixes):
            return False
        return True

    # ---------------------------------------------------------
    # LISTING
    # ---------------------------------------------------------

    def list_tables(
        self,
        include_internal: bool = False,
        exact_counts: bool = True,
    ) -> List[TableInfo]:
        """
        List tables with row counts, sorted by name.

        Args:
            include_internal: Include internal-prefix tables
            exact_counts: COUNT(*) per table, else planner estimate
                where the backend has one
        """
        names = [
            name for name in inspect(self._db.engine).get_table_names(schema=self._schema)
            if self.is_listable(name, include_internal)
        ]

        estimates = {}
        if not exact_counts and self.dialect == "postgresql":
            estimates = self._estimated_counts()

        result = []
        for name in sorted(names):
            if not is_valid_identifier(name):
                logger.warning(f"Skipping table with unsafe name: {name!r}")
                continue
            if name in estimates:
                result.append(TableInfo(name=name, row_count=estimates[name], estimated=True))
            else:
                result.append(TableInfo(name=name, row_count=self.get_local_count(name)))
        return result

    def _estimated_counts(self) -> dict:
        query = text(
            "SELECT c.relname, c.reltuples FROM pg_class c "
            "JOIN pg_namespace n ON n.oid = c.relnamespace "
            "WHERE n.nspname = :schema AND c.relkind = 'r'"
        )
        with self._db.engine.connect() as conn:
            rows = conn.execute(query, {"schema": self._schema or "public"}).all()
        return {name: max(int(tuples or 0), 0) for name, tuples in rows}

    # ---------------------------------------------------------
    # TABLE METADATA
    # ---------------------------------------------------------

    def table_exists(self, table: str) -> bool:
        ident = escape_identifier(table)
        return inspect(self._db.engine).has_table(ident, schema=self._schema)

    def load_table(self, table: str) -> Table:
        """Reflect a table for Core statements."""
        ident = escape_identifier(table)
        try:
            return Table(ident, MetaData(), autoload_with=self._db.engine, schema=self._schema)
        except NoSuchTableError as e:
            raise TableNotFoundError(ident) from e

    def get_primary_key(self, table: str) -> List[str]:
        """Primary-key columns in declared order; empty if none."""
        ident = escape_identifier(table)
        if not self.table_exists(ident):
            raise TableNotFoundError(ident)
        pk = inspect(self._db.engine).get_pk_constraint(ident, schema=self._schema)
        return list(pk.get("constrained_columns") or [])

    def get_schema(self, table: str) -> TableSchema:
        """
        Describe one table.

        Raises:
            InvalidIdentifierError: unsafe table name
            TableNotFoundError: table absent
        """
        ident = escape_identifier(table)
        if not self.table_exists(ident):
            raise TableNotFoundError(ident)

        insp = inspect(self._db.engine)
        primary_key = list(
            insp.get_pk_constraint(ident, schema=self._schema).get("constrained_columns") or []
        )

        columns = []
        for col in insp.get_columns(ident, schema=self._schema):
            described = describe_type(col["type"], self.dialect)
            described.name = col["name"]
            described.nullable = bool(col.get("nullable", True))
            described.primary_key = col["name"] in primary_key
            columns.append(described)

        return TableSchema(table=ident, columns=columns, primary_key=primary_key)

    # ---------------------------------------------------------
    # DDL
    # ---------------------------------------------------------

    def build_create_table(self, table: str, schema: TableSchema) -> str:
        """Synthesize CREATE TABLE for the local dialect."""
        ident = escape_identifier(table)
        if not schema.columns:
            raise TableNotFoundError(ident)

        primary_key = [escape_identifier(pk) for pk in schema.primary_key]
        single_pk = primary_key[0] if len(primary_key) == 1 else None

        parts = []
        for col in schema.columns:
            name = escape_identifier(col.name)
            ddl_type = translate_type(col, self.dialect, auto_increment=(name == single_pk))
            nullable = "" if col.nullable and name not in primary_key else " NOT NULL"
            parts.append(f"{name.quoted} {ddl_type}{nullable}")

        if primary_key:
            pk_cols = ", ".join(pk.quoted for pk in primary_key)
            parts.append(f"PRIMARY KEY ({pk_cols})")

        return f"CREATE TABLE IF NOT EXISTS {self._qualified(ident)} ({', '.join(parts)})"

    def create_table(self, table: str, schema: TableSchema) -> None:
        """Create a table from a remote description. No-op if it exists."""
        ddl = self.build_create_table(table, schema)
        try:
            with self._db.engine.begin() as conn:
                conn.execute(text(ddl))
        except SQLAlchemyError as e:
            logger.error(f"Failed to create table {table}: {e}")
            raise PersistenceError(f"Create table {table} failed: {e}", cause=e) from e
        logger.info(f"Created table {table} with {len(schema.columns)} columns")

    # ---------------------------------------------------------
    # COUNTS
    # ---------------------------------------------------------

    def get_local_count(self, table: str) -> int:
        ident = escape_identifier(table)
        if not self.table_exists(ident):
            raise TableNotFoundError(ident)
        with self._db.engine.connect() as conn:
            return int(conn.execute(text(f"SELECT COUNT(*) FROM {self._qualified(ident)}")).scalar() or 0)
