"""Integration tests for projects_etl.schema.ensure_schema."""

from __future__ import annotations

import sqlite3

import pytest

from projects_etl.record_mapper import map_row
from projects_etl.schema import BUSINESS_KEY_INDEX, TABLE_ORDER, ensure_schema
from projects_etl.upsert import upsert_batch


def _record(position, ovp, amount):
    return map_row(
        {"PROJECT NAME": f"Project {position}", "OVP NUMBER": ovp, "UPDATED CONTRACT AMOUNT": amount},
        position=position,
    )


class TestEnsureSchemaSqlite:
    def test_creates_every_table(self, store):
        report = ensure_schema(store)
        assert report.tables_created == list(TABLE_ORDER)
        assert report.business_key_unique
        for table in TABLE_ORDER:
            assert store.table_exists(table)
        assert store.has_unique_index("projects", "ovp_number")

    def test_rerun_changes_nothing(self, store):
        ensure_schema(store)
        report = ensure_schema(store)
        assert report.tables_created == []
        assert report.columns_added == []
        assert report.business_key_unique

    def test_additive_migration_on_legacy_table(self, store):
        with store.transaction():
            store.execute(
                "CREATE TABLE projects (id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "project_name TEXT NOT NULL, ovp_number TEXT)"
            )
            store.execute(
                "INSERT INTO projects (project_name, ovp_number) VALUES (?, ?)",
                ("Legacy Tower", "OVP-100"),
            )

        report = ensure_schema(store)

        assert "projects" not in report.tables_created
        assert "projects.contract_billed" in report.columns_added
        assert "projects.remarks" in report.columns_added
        row = store.fetchone("SELECT * FROM projects WHERE ovp_number = 'OVP-100'")
        assert row["project_name"] == "Legacy Tower"
        assert row["contract_billed"] == 0
        assert row["duration_days"] == 0
        assert row["project_status"] == "OPEN"
        assert row["remarks"] is None

    def test_duplicate_keys_fall_back_to_delete_then_insert(self, store):
        with store.transaction():
            store.execute(
                "CREATE TABLE projects (id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "project_name TEXT NOT NULL, ovp_number TEXT)"
            )
            for name in ("Twin A", "Twin B"):
                store.execute(
                    "INSERT INTO projects (project_name, ovp_number) VALUES (?, ?)",
                    (name, "OVP-DUP"),
                )

        report = ensure_schema(store)
        assert not report.business_key_unique
        assert report.business_key_error
        assert BUSINESS_KEY_INDEX.name not in report.indexes_ensured

        result = upsert_batch(store, [_record(1, "OVP-DUP", 500)])
        assert result.updated == 1
        rows = store.fetchall("SELECT * FROM projects WHERE ovp_number = 'OVP-DUP'")
        assert len(rows) == 1
        assert rows[0]["updated_contract_amount"] == 500.0

    def test_attachments_reference_projects(self, provisioned_store):
        with pytest.raises(sqlite3.IntegrityError):
            with provisioned_store.transaction():
                provisioned_store.execute(
                    "INSERT INTO project_attachments (project_id, filename, onedrive_item_id) "
                    "VALUES (?, ?, ?)",
                    (999, "plan.pdf", "item-1"),
                )
        assert provisioned_store.count("project_attachments") == 0


class TestEnsureSchemaPostgres:
    def test_creates_and_reruns(self, pg_store):
        first = ensure_schema(pg_store)
        assert first.tables_created == list(TABLE_ORDER)
        assert pg_store.has_unique_index("projects", "ovp_number")
        second = ensure_schema(pg_store)
        assert second.tables_created == []
        assert second.columns_added == []

    def test_additive_migration(self, pg_store):
        with pg_store.transaction():
            pg_store.execute(
                "CREATE TABLE projects (id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY, "
                "project_name TEXT NOT NULL, ovp_number TEXT)"
            )
            pg_store.execute(
                "INSERT INTO projects (project_name, ovp_number) VALUES (%s, %s)",
                ("Legacy Tower", "OVP-100"),
            )
        report = ensure_schema(pg_store)
        assert "projects.contract_billed" in report.columns_added
        row = pg_store.fetchone("SELECT contract_billed FROM projects")
        assert row["contract_billed"] == 0
