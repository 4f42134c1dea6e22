"""
Data Layer - Types.

============================================================
PURPOSE
============================================================
Value types shared by the inspector, exporter, importer and
channel:

- ConflictStrategy: closed set of import strategies
- ColumnSchema / TableSchema: remote schema description
- TableInfo: one entry of a table listing
- ImportResult: per-batch import outcome

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.exceptions import ValidationError
from sync_data.codec import escape_identifier


# ============================================================
# CONFLICT STRATEGY
# ============================================================

class ConflictStrategy(str, Enum):
    """How to resolve a primary-key collision during import."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    MERGE = "merge"  # null or absent incoming values keep the stored value
    APPEND = "append"

    @property
    def retry_safe(self) -> bool:
        """Append always inserts, so replaying it duplicates rows."""
        return self is not ConflictStrategy.APPEND

    @classmethod
    def parse(cls, value: Any) -> "ConflictStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError as e:
            raise ValidationError(
                f"Unknown conflict strategy: {value!r}",
                errors={"conflict_strategy": "invalid"},
            ) from e


# ============================================================
# SCHEMA DESCRIPTION
# ============================================================

def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{key} must be a non-negative integer", errors={key: "invalid"})
    return value


@dataclass
class ColumnSchema:
    """One column of a remote schema description."""

    name: str
    """Column name."""

    type: str
    """Declared type in introspection vocabulary, e.g. 'character varying'."""

    nullable: bool = True
    primary_key: bool = False
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "nullable": self.nullable,
            "primary_key": self.primary_key,
        }
        for key in ("max_length", "precision", "scale"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnSchema":
        if not isinstance(data, dict) or "name" not in data or "type" not in data:
            raise ValidationError(
                "Column description needs name and type",
                errors={"column": "invalid"},
            )
        return cls(
            name=escape_identifier(data["name"]),
            type=str(data["type"]),
            nullable=bool(data.get("nullable", True)),
            primary_key=bool(data.get("primary_key", False)),
            max_length=_optional_int(data, "max_length"),
            precision=_optional_int(data, "precision"),
            scale=_optional_int(data, "scale"),
        )


@dataclass
class TableSchema:
    """
    Remote schema description for one table.

    Wire form: {"table", "columns": [...], "primary_key": [...]}
    """

    table: str
    columns: List[ColumnSchema] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Optional[ColumnSchema]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "columns": [c.to_dict() for c in self.columns],
            "primary_key": list(self.primary_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], table: Optional[str] = None) -> "TableSchema":
        """Parse and validate every identifier in a wire description."""
        name = table or data.get("table")
        columns = [ColumnSchema.from_dict(c) for c in data.get("columns") or []]
        primary_key = [escape_identifier(pk) for pk in data.get("primary_key") or []]
        if not primary_key:
            primary_key = [c.name for c in columns if c.primary_key]
        return cls(table=escape_identifier(name), columns=columns, primary_key=primary_key)


@dataclass
class TableInfo:
    """One entry of a table listing."""

    name: str
    row_count: int
    estimated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "row_count": self.row_count, "estimated": self.estimated}


# ============================================================
# IMPORT RESULT
# ============================================================

@dataclass
class ImportErrorEntry:
    """A record that could not be written and why."""

    record: Dict[str, Any]
    reason: str


@dataclass
class ImportResult:
    """Outcome counts for one batch against one table."""

    table: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[ImportErrorEntry] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + self.failed

    @property
    def error_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.failed / self.processed

    def merge(self, other: "ImportResult") -> "ImportResult":
        """Accumulate another batch's counts into this one."""
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": [{"record": e.record, "reason": e.reason} for e in self.errors],
        }
