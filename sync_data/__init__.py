"""
Data layer: identifier/value codec, schema inspection, record
export and conflict-resolving import.
"""

from sync_data.codec import (
    SafeIdentifier,
    escape_identifier,
    is_valid_identifier,
    encode_literal,
    encode_value,
    decode_value,
    encode_record,
    decode_record,
)
from sync_data.types import (
    ConflictStrategy,
    ColumnSchema,
    TableSchema,
    TableInfo,
    ImportResult,
    ImportErrorEntry,
)
from sync_data.schema_inspector import SchemaInspector
from sync_data.data_exporter import DataExporter, ExportPage
from sync_data.data_importer import DataImporter

__all__ = [
    "SafeIdentifier",
    "escape_identifier",
    "is_valid_identifier",
    "encode_literal",
    "encode_value",
    "decode_value",
    "encode_record",
    "decode_record",
    "ConflictStrategy",
    "ColumnSchema",
    "TableSchema",
    "TableInfo",
    "ImportResult",
    "ImportErrorEntry",
    "SchemaInspector",
    "DataExporter",
    "ExportPage",
    "DataImporter",
]
