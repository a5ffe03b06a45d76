"""projects_etl.store

Thin handles over the two relational stores the pipeline writes to:

  SqliteStore    local file (the default) or ':memory:' for tests
  PostgresStore  remote database via psycopg

Both run their connection in autocommit mode and open transactions
explicitly, so every write goes through transaction() and per-row work
through savepoint().  Rows come back as plain dicts.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg
from psycopg.conninfo import conninfo_to_dict
from psycopg.rows import dict_row

from projects_etl.config import POSTGRES, SQLITE, resolve_store_url
from projects_etl.shared import FatalStoreError

log = logging.getLogger(__name__)


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class Store:
    dialect: str = ""
    placeholder: str = "?"
    # Exceptions that reject one row without aborting the batch.
    row_errors: tuple[type[BaseException], ...] = ()
    # Every driver-level error.
    db_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, label: str) -> None:
        self.label = label

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label}>"

    # -- SQL helpers --------------------------------------------------------

    def placeholders(self, n: int) -> str:
        return ", ".join([self.placeholder] * n)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        raise NotImplementedError

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        raise NotImplementedError

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.fetchall(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.fetchone(sql, params)
        if row is None:
            return None
        return next(iter(row.values()))

    def count(self, table: str) -> int:
        return int(self.scalar(f"SELECT COUNT(*) AS n FROM {quote_ident(table)}") or 0)

    # -- Transactions -------------------------------------------------------

    def transaction(self):
        """Context manager: commit on success, roll back and re-raise on error."""
        raise NotImplementedError

    def savepoint(self):
        """Context manager scoping one row's writes inside a transaction."""
        raise NotImplementedError

    # -- Introspection ------------------------------------------------------

    def table_exists(self, table: str) -> bool:
        raise NotImplementedError

    def column_names(self, table: str) -> list[str]:
        raise NotImplementedError

    def has_unique_index(self, table: str, column: str) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# sqlite
# ---------------------------------------------------------------------------

class SqliteStore(Store):
    dialect = SQLITE
    placeholder = "?"
    row_errors = (sqlite3.IntegrityError, sqlite3.InterfaceError, OverflowError)
    db_errors = (sqlite3.Error, OverflowError)

    def __init__(self, path: str = ":memory:") -> None:
        super().__init__(f"sqlite:{path}")
        try:
            self.conn = sqlite3.connect(path, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            raise FatalStoreError(f"cannot open sqlite store {path}: {exc}", stage="connect") from exc
        self._depth = 0
        self._sp_seq = 0

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, tuple(params))

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return [dict(r) for r in self.conn.execute(sql, tuple(params)).fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._depth:
            with self.savepoint():
                yield
            return
        self.conn.execute("BEGIN")
        self._depth = 1
        try:
            yield
        except BaseException:
            self._depth = 0
            self.conn.execute("ROLLBACK")
            raise
        self._depth = 0
        self.conn.execute("COMMIT")

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        self._sp_seq += 1
        name = f"sp_{self._sp_seq}"
        self.conn.execute(f"SAVEPOINT {name}")
        self._depth += 1
        try:
            yield
        except BaseException:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        finally:
            self._depth -= 1
        self.conn.execute(f"RELEASE SAVEPOINT {name}")

    def table_exists(self, table: str) -> bool:
        row = self.fetchone(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        )
        return row is not None

    def column_names(self, table: str) -> list[str]:
        return [r["name"] for r in self.fetchall(f"PRAGMA table_info({quote_ident(table)})")]

    def has_unique_index(self, table: str, column: str) -> bool:
        for idx in self.fetchall(f"PRAGMA index_list({quote_ident(table)})"):
            if not idx["unique"] or idx.get("partial"):
                continue
            cols = [
                r["name"]
                for r in self.fetchall(f"PRAGMA index_info({quote_ident(idx['name'])})")
            ]
            if cols == [column]:
                return True
        return False

    def close(self) -> None:
        self.conn.close()


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

def _pg_label(url: str) -> str:
    try:
        info = conninfo_to_dict(url)
    except psycopg.ProgrammingError:
        return "postgres:<unparseable dsn>"
    return f"postgres:{info.get('host', 'localhost')}/{info.get('dbname', '')}"


class PostgresStore(Store):
    dialect = POSTGRES
    placeholder = "%s"
    row_errors = (psycopg.IntegrityError, psycopg.DataError)
    db_errors = (psycopg.Error,)

    def __init__(self, url: str | None = None, *, conn: psycopg.Connection | None = None) -> None:
        """Connect to `url`, or wrap an already-open `conn`."""
        if conn is not None:
            super().__init__(f"postgres:{conn.info.host}/{conn.info.dbname}")
            conn.autocommit = True
            conn.row_factory = dict_row
            self.conn = conn
            return
        if url is None:
            raise ValueError("PostgresStore needs a url or an open conn")
        super().__init__(_pg_label(url))
        try:
            self.conn = psycopg.connect(url, autocommit=True, row_factory=dict_row)
        except psycopg.Error as exc:
            raise FatalStoreError(
                f"cannot connect to {self.label}: {exc}", stage="connect"
            ) from exc

    def execute(self, sql: str, params: Sequence[Any] = ()) -> psycopg.Cursor:
        return self.conn.execute(sql, tuple(params))

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self.conn.execute(sql, tuple(params)).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.conn.transaction():
            yield

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        # Nested psycopg transaction blocks are savepoints.
        with self.conn.transaction():
            yield

    def table_exists(self, table: str) -> bool:
        row = self.fetchone(
            """
            SELECT 1 AS found FROM information_schema.tables
            WHERE table_schema = current_schema() AND table_name = %s
            """,
            (table,),
        )
        return row is not None

    def column_names(self, table: str) -> list[str]:
        rows = self.fetchall(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            ORDER BY ordinal_position
            """,
            (table,),
        )
        return [r["column_name"] for r in rows]

    def has_unique_index(self, table: str, column: str) -> bool:
        row = self.fetchone(
            """
            SELECT 1 AS found
            FROM pg_index i
            JOIN pg_class t ON t.oid = i.indrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = i.indkey[0]
            WHERE n.nspname = current_schema()
              AND t.relname = %s
              AND a.attname = %s
              AND i.indisunique
              AND i.indnatts = 1
              AND i.indpred IS NULL
            """,
            (table, column),
        )
        return row is not None

    def close(self) -> None:
        self.conn.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def connect_store(url: str | None, local_db_path: str = "projects.db") -> Store:
    dialect, target = resolve_store_url(url, local_db_path)
    if dialect == POSTGRES:
        return PostgresStore(target)
    return SqliteStore(target)


@contextmanager
def open_store(url: str | None, local_db_path: str = "projects.db") -> Iterator[Store]:
    """Open a store for the duration of a with-block and always close it.

    Raises:
        FatalStoreError: unsupported URL or the store cannot be reached.
    """
    store = connect_store(url, local_db_path)
    log.info("opened %s", store.label)
    try:
        yield store
    finally:
        store.close()
        log.info("closed %s", store.label)
