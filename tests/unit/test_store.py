"""Unit tests for projects_etl.store constructors that need no server."""

import pytest

from projects_etl.store import PostgresStore, SqliteStore


class TestPostgresStoreConstructor:
    def test_needs_url_or_connection(self):
        with pytest.raises(ValueError, match="url or an open conn"):
            PostgresStore()


class TestSqliteStore:
    def test_memory_label(self):
        s = SqliteStore(":memory:")
        try:
            assert s.label == "sqlite::memory:"
            assert s.scalar("SELECT 1 AS one") == 1
        finally:
            s.close()
