"""
Conflict-Resolution Import Engine.

============================================================
PURPOSE
============================================================
Writes records received from a sender into a local table,
resolving primary-key collisions with one of four strategies.

CONFLICT STRATEGIES:
- skip:      leave an existing row untouched (default)
- overwrite: replace every non-PK column with the incoming value
- merge:     keep existing values where the incoming one is null
             or absent, take incoming values otherwise
- append:    drop the PK fields and always insert

INVARIANTS:
- Every column name passes escape_identifier before any write;
  one bad name fails the whole batch before anything is written
- Values are always bound parameters
- Each record commits in its own transaction, so a bad record
  is reported in errors and the rest of the batch still lands

============================================================
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import Table, and_, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import RecordImportError, SyncException
from database.engine import Database
from sync_data.codec import decode_record, escape_identifier
from sync_data.schema_inspector import SchemaInspector
from sync_data.types import ConflictStrategy, ImportErrorEntry, ImportResult


logger = logging.getLogger(__name__)


StrategyLike = Union[ConflictStrategy, str]


class DataImporter:
    """
    Imports record batches into local tables.

    Usage:
        importer = DataImporter(db)
        result = importer.import_records("users", records, "overwrite")
        print(result.created, result.updated, result.skipped)
    """

    def __init__(self, db: Database, inspector: Optional[SchemaInspector] = None):
        self._db = db
        self._inspector = inspector or SchemaInspector(db)

    @property
    def inspector(self) -> SchemaInspector:
        return self._inspector

    # ============================================================
    # PUBLIC API
    # ============================================================

    def import_records(
        self,
        table: str,
        records: Iterable[Mapping[Any, Any]],
        strategy: StrategyLike = ConflictStrategy.SKIP,
    ) -> ImportResult:
        """
        Import one batch into one table.

        An overwrite of an existing row by a record that carries only
        primary key columns counts as updated. A merge that finds no
        non-key column to write counts as skipped.

        Raises:
            InvalidIdentifierError: table or any column name unsafe
            TableNotFoundError: table absent
            ValidationError: unknown strategy
        """
        strategy = ConflictStrategy.parse(strategy)
        ident = escape_identifier(table)
        records = list(records)

        for record in records:
            for key in record.keys():
                escape_identifier(str(key))

        sa_table = self._inspector.load_table(ident)
        primary_keys = [c.name for c in sa_table.primary_key.columns]
        result = ImportResult(table=ident)

        with self._db.engine.connect() as conn:
            for raw in records:
                try:
                    with conn.begin():
                        outcome = self._import_one(conn, sa_table, raw, primary_keys, strategy)
                except (SQLAlchemyError, RecordImportError, ValueError, TypeError) as e:
                    reason = _error_reason(e)
                    logger.warning(f"Error importing record into {ident}: {reason}")
                    result.errors.append(ImportErrorEntry(record=dict(raw), reason=reason))
                    continue

                if outcome == "created":
                    result.created += 1
                elif outcome == "updated":
                    result.updated += 1
                else:
                    result.skipped += 1

        logger.info(
            f"Imported into {ident} ({strategy.value}): created={result.created} "
            f"updated={result.updated} skipped={result.skipped} errors={result.failed}"
        )
        return result

    def import_multiple(
        self,
        table_records: Mapping[str, List[Mapping[Any, Any]]],
        strategies: Optional[Mapping[str, StrategyLike]] = None,
        default_strategy: StrategyLike = ConflictStrategy.SKIP,
    ) -> Dict[str, ImportResult]:
        """
        Import several tables independently.

        A table that fails as a whole gets a result carrying a single
        error entry; the other tables still run.
        """
        strategies = strategies or {}
        results: Dict[str, ImportResult] = {}

        for table, records in table_records.items():
            strategy = strategies.get(table, default_strategy)
            try:
                results[table] = self.import_records(table, records, strategy)
            except (SyncException, SQLAlchemyError) as e:
                logger.error(f"Import of table {table!r} failed: {e}")
                failed = ImportResult(table=str(table))
                failed.errors.append(ImportErrorEntry(record={}, reason=str(e)))
                results[table] = failed

        return results

    # ============================================================
    # SINGLE RECORD
    # ============================================================

    def _import_one(
        self,
        conn: Connection,
        table: Table,
        raw: Mapping[Any, Any],
        primary_keys: List[str],
        strategy: ConflictStrategy,
    ) -> str:
        record = decode_record(raw)

        unknown = sorted(set(record) - set(table.c.keys()))
        if unknown:
            raise RecordImportError(f"Unknown columns: {', '.join(unknown)}", record=record)

        if strategy is ConflictStrategy.APPEND:
            values = {k: v for k, v in record.items() if k not in primary_keys}
            conn.execute(insert(table).values(**values))
            return "created"

        existing = self._find_existing(conn, table, record, primary_keys)
        if existing is None:
            conn.execute(insert(table).values(**record))
            return "created"

        if strategy is ConflictStrategy.SKIP:
            return "skipped"

        if strategy is ConflictStrategy.OVERWRITE:
            values = {k: v for k, v in record.items() if k not in primary_keys}
        else:
            values = {k: v for k, v in existing.items() if k not in primary_keys}
            values.update(
                {k: v for k, v in record.items() if k not in primary_keys and v is not None}
            )

        if not values:
            # Nothing beyond the key to write; the stored row already matches
            return "updated" if strategy is ConflictStrategy.OVERWRITE else "skipped"

        conn.execute(
            update(table).where(_pk_clause(table, existing, primary_keys)).values(**values)
        )
        return "updated"

    @staticmethod
    def _find_existing(
        conn: Connection,
        table: Table,
        record: Dict[str, Any],
        primary_keys: List[str],
    ) -> Optional[Dict[str, Any]]:
        if not primary_keys:
            return None
        if any(record.get(pk) is None for pk in primary_keys):
            return None

        row = conn.execute(
            select(table).where(_pk_clause(table, record, primary_keys)).limit(1)
        ).mappings().first()
        return dict(row) if row is not None else None


def _pk_clause(table: Table, values: Mapping[str, Any], primary_keys: List[str]):
    return and_(*[table.c[pk] == values[pk] for pk in primary_keys])


def _error_reason(error: Exception) -> str:
    if isinstance(error, SQLAlchemyError) and getattr(error, "orig", None) is not None:
        return str(error.orig)
    if isinstance(error, RecordImportError):
        return error.message
    return str(error)
