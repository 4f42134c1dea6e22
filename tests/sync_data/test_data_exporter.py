"""
Tests for the Data Exporter.
"""

import pytest
from sqlalchemy import text

from core.exceptions import InvalidIdentifierError, TableNotFoundError, ValidationError
from sync_data.data_exporter import MAX_LIMIT


class TestFetchRecords:
    """Tests for primary-key ordered pages."""

    def test_ordered_by_primary_key(self, db, exporter, empty_users_table):
        """Insertion order does not leak into pages."""
        with db.engine.begin() as conn:
            for pk in (3, 1, 2):
                conn.execute(text("INSERT INTO users (id, name) VALUES (:id, :name)"),
                             {"id": pk, "name": f"u{pk}"})

        page = exporter.fetch_records("users", offset=0, limit=10)
        assert [r["id"] for r in page.records] == [1, 2, 3]

    def test_pagination(self, exporter, users_table):
        """A full page reports has_more; the short last page does not."""
        first = exporter.fetch_records("users", offset=0, limit=2)
        assert [r["id"] for r in first.records] == [1, 2]
        assert first.has_more is True

        second = exporter.fetch_records("users", offset=2, limit=2)
        assert [r["id"] for r in second.records] == [3]
        assert second.has_more is False

    def test_offset_past_end(self, exporter, users_table):
        page = exporter.fetch_records("users", offset=10, limit=5)
        assert page.records == []
        assert page.has_more is False

    def test_limit_is_capped(self, exporter, users_table):
        page = exporter.fetch_records("users", limit=MAX_LIMIT * 5)
        assert page.limit == MAX_LIMIT

    def test_records_are_plain_dicts(self, exporter, users_table):
        page = exporter.fetch_records("users", limit=1)
        assert page.records[0] == {"id": 1, "a": 1, "b": 2, "c": None, "name": "alice"}

    @pytest.mark.parametrize("offset,limit", [(-1, 10), (0, 0), (0, -5), ("0", 10)])
    def test_invalid_pagination(self, exporter, users_table, offset, limit):
        with pytest.raises(ValidationError):
            exporter.fetch_records("users", offset=offset, limit=limit)

    def test_missing_table(self, exporter):
        with pytest.raises(TableNotFoundError):
            exporter.fetch_records("orders")

    def test_unsafe_table(self, exporter):
        with pytest.raises(InvalidIdentifierError):
            exporter.fetch_records("users--")

    def test_table_without_primary_key_pages_do_not_overlap(self, db, exporter):
        with db.engine.begin() as conn:
            conn.execute(text("CREATE TABLE tags (label VARCHAR(20))"))
            for label in ("c", "a", "b"):
                conn.execute(text("INSERT INTO tags (label) VALUES (:label)"), {"label": label})

        first = exporter.fetch_records("tags", offset=0, limit=2)
        second = exporter.fetch_records("tags", offset=2, limit=2)
        labels = [r["label"] for r in first.records + second.records]
        assert labels == ["a", "b", "c"]


class TestStreamingAndExport:
    """Tests for full-table streaming and INSERT export."""

    def test_count(self, exporter, users_table):
        assert exporter.count("users") == 3

    def test_stream_records_in_batches(self, exporter, users_table):
        batches = list(exporter.stream_records("users", batch_size=2))
        assert [len(b) for b in batches] == [2, 1]

    def test_stream_empty_table(self, exporter, empty_users_table):
        assert list(exporter.stream_records("users")) == []

    def test_to_sql_inserts(self, exporter, users_table):
        statements = list(exporter.to_sql_inserts("users"))

        assert len(statements) == 3
        assert statements[0] == (
            'INSERT INTO "users" ("id", "a", "b", "c", "name") '
            "VALUES (1, 1, 2, NULL, 'alice');"
        )
        assert "'O''Brien'" in statements[2]

    def test_to_sql_inserts_for_given_records(self, exporter):
        statements = list(exporter.to_sql_inserts("items", [{"id": 7, "flag": True}]))
        assert statements == ['INSERT INTO "items" ("id", "flag") VALUES (7, 1);']

    def test_to_sql_inserts_rejects_unsafe_column(self, exporter):
        with pytest.raises(InvalidIdentifierError):
            list(exporter.to_sql_inserts("items", [{"id); --": 1}]))
