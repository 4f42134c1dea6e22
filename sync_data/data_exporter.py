"""
Data Exporter.

Sender-side reads: counts, primary-key ordered pages, full-table
streaming and literal INSERT export.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, select

from core.exceptions import ValidationError
from database.engine import Database
from sync_data.codec import encode_literal, escape_identifier
from sync_data.schema_inspector import SchemaInspector


logger = logging.getLogger(__name__)


DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
STREAM_BATCH_SIZE = 500


@dataclass
class ExportPage:
    """One page of records."""

    table: str
    offset: int
    limit: int
    records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        # A full page means there may be another one
        return len(self.records) == self.limit


class DataExporter:
    """Reads records from local tables for a remote receiver."""

    def __init__(self, db: Database, inspector: Optional[SchemaInspector] = None):
        self._db = db
        self._inspector = inspector or SchemaInspector(db)

    @property
    def inspector(self) -> SchemaInspector:
        return self._inspector

    def count(self, table: str) -> int:
        return self._inspector.get_local_count(table)

    def fetch_records(
        self,
        table: str,
        offset: int = 0,
        limit: Optional[int] = DEFAULT_LIMIT,
    ) -> ExportPage:
        """
        Fetch one page ordered by primary key.

        Tables without a primary key are ordered by all columns so
        that consecutive pages do not overlap.
        """
        if offset is None:
            offset = 0
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer", errors={"offset": "invalid"})
        if limit is None:
            limit = DEFAULT_LIMIT
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationError("limit must be a positive integer", errors={"limit": "invalid"})
        limit = min(limit, MAX_LIMIT)

        sa_table = self._inspector.load_table(table)
        pk_columns = [c for c in sa_table.primary_key.columns]
        order_by = pk_columns or list(sa_table.columns)

        stmt = select(sa_table).order_by(*order_by).offset(offset).limit(limit)
        with self._db.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        records = [dict(row) for row in rows]
        logger.debug(f"Exported {len(records)} records from {table} at offset {offset}")
        return ExportPage(table=sa_table.name, offset=offset, limit=limit, records=records)

    def stream_records(self, table: str, batch_size: int = STREAM_BATCH_SIZE) -> Iterator[List[Dict[str, Any]]]:
        """Yield the whole table in batches."""
        offset = 0
        batch_size = min(batch_size, MAX_LIMIT)
        while True:
            page = self.fetch_records(table, offset=offset, limit=batch_size)
            if page.records:
                yield page.records
            if not page.has_more:
                break
            offset += len(page.records)

    def to_sql_inserts(
        self,
        table: str,
        records: Optional[List[Dict[str, Any]]] = None,
    ) -> Iterator[str]:
        """
        Render INSERT statements with literal values.

        When records is None the whole table is exported.
        """
        ident = escape_identifier(table)
        dialect = self._db.dialect

        if records is None:
            batches: Iterator[List[Dict[str, Any]]] = self.stream_records(ident)
        else:
            batches = iter([records])

        for batch in batches:
            for record in batch:
                columns = [escape_identifier(c) for c in record.keys()]
                values = [encode_literal(record[c], dialect) for c in record.keys()]
                yield (
                    f"INSERT INTO {ident.quoted} ({', '.join(c.quoted for c in columns)}) "
                    f"VALUES ({', '.join(values)});"
                )
