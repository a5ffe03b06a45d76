"""Integration test fixtures.

Most tests run against an in-memory sqlite store.  Tests that take
`pg_store` run against an ephemeral PostgreSQL database provided by
pytest-postgresql and are skipped when the server binaries are not
installed (or the suite runs as root, which initdb refuses).
"""

from __future__ import annotations

import os
import shutil

import pytest
from pytest_postgresql import factories

from projects_etl.schema import ensure_schema
from projects_etl.store import PostgresStore, SqliteStore

PG_AVAILABLE = shutil.which("pg_config") is not None and (
    not hasattr(os, "geteuid") or os.geteuid() != 0
)

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    """Fresh, empty in-memory sqlite store."""
    s = SqliteStore(":memory:")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def provisioned_store(store):
    ensure_schema(store)
    return store


@pytest.fixture
def pg_store(request):
    """PostgresStore over a fresh pytest-postgresql database."""
    if not PG_AVAILABLE:
        pytest.skip("PostgreSQL server binaries not available")
    conn = request.getfixturevalue("postgresql")
    return PostgresStore(conn=conn)


# ---------------------------------------------------------------------------
# Source files
# ---------------------------------------------------------------------------

TRACKER_CSV = (
    "PROJECT NAME,OVP NUMBER,PROJECT DIRECTOR,YEAR,UPDATED CONTRACT AMOUNT\n"
    "Tower A,OVP-001,PAUL PASCUAL,2023,100\n"
    ",OVP-002,FRED RAMOS,2023,200\n"
    "Tower A (revised),OVP-001,PAUL PASCUAL,2023,300\n"
)


@pytest.fixture
def tracker_csv(tmp_path):
    """Three-row export: a keyed row, a nameless row and a revision of the first."""
    p = tmp_path / "tracker.csv"
    p.write_text(TRACKER_CSV, encoding="utf-8")
    return p


@pytest.fixture
def write_csv(tmp_path):
    def _write(name, header, rows):
        lines = [",".join(header)] + [",".join(str(v) for v in row) for row in rows]
        p = tmp_path / name
        p.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return p

    return _write
