"""projects_etl.replicate

Copy every row of each table from one store to another, in foreign-key
order, keeping primary keys as they are.

Writes use the same replace-on-conflict discipline as the import (keyed on
the primary key here), so a replication can be re-run over a partially
copied target.  Each table is one transaction on the target.

A target row that holds a source row's unique key (ovp_number, username,
email) under a different primary key is deleted before the source row is
written, so the source row replaces it.  A source with duplicate keys keeps
the last row per key.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from projects_etl.config import POSTGRES
from projects_etl.schema import BUSINESS_KEY_INDEX, TABLE_ORDER, TABLES_BY_NAME
from projects_etl.shared import FatalStoreError
from projects_etl.store import Store, quote_ident
from projects_etl.upsert import upsert_sql

log = logging.getLogger(__name__)

# Accounts copied without an explicit approval flag stay usable.
APPROVED_DEFAULTS: dict[str, dict[str, Any]] = {"users": {"approved": 1}}


@dataclass
class ReplicationResult:
    tables: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    dropped_columns: dict[str, list[str]] = field(default_factory=dict)
    # Target rows removed because a source row took their unique key.
    displaced: dict[str, int] = field(default_factory=dict)

    @property
    def total_rows(self) -> int:
        return sum(self.tables.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": self.tables,
            "skipped": self.skipped,
            "dropped_columns": self.dropped_columns,
            "displaced": self.displaced,
            "total_rows": self.total_rows,
        }


def _primary_key(table: str) -> str:
    spec = TABLES_BY_NAME.get(table)
    return spec.primary_key if spec else "id"


def _unique_keys(table: str) -> tuple[str, ...]:
    spec = TABLES_BY_NAME.get(table)
    if spec is None:
        return ()
    keys = [c.name for c in spec.columns if c.unique and not c.is_pk]
    indexes = list(spec.indexes) + [BUSINESS_KEY_INDEX]
    for idx in indexes:
        if idx.table == table and idx.unique and len(idx.columns) == 1 and idx.columns[0] not in keys:
            keys.append(idx.columns[0])
    return tuple(keys)


def _displace_sql(target: Store, table: str, key: str, pk: str) -> str:
    return (
        f"DELETE FROM {quote_ident(table)} "
        f"WHERE {quote_ident(key)} = {target.placeholder} "
        f"AND {quote_ident(pk)} <> {target.placeholder}"
    )


def _apply_defaults(table: str, row: dict[str, Any], target_columns: set[str]) -> dict[str, Any]:
    for column, value in APPROVED_DEFAULTS.get(table, {}).items():
        if column in target_columns and row.get(column) is None:
            row[column] = value
    return row


def _advance_identity(target: Store, table: str, pk: str) -> None:
    spec = TABLES_BY_NAME.get(table)
    if target.dialect != POSTGRES or spec is None or not spec.has_identity:
        return
    max_id = target.scalar(f"SELECT MAX({quote_ident(pk)}) AS max_id FROM {quote_ident(table)}")
    if max_id is None:
        return
    target.execute(
        "SELECT setval(pg_get_serial_sequence(%s, %s), %s)",
        (table, pk, int(max_id)),
    )


def copy_table(
    source: Store,
    target: Store,
    table: str,
    result: ReplicationResult,
    batch_size: int = 100,
    delay_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Copy one table; returns rows written.  Caller checks source existence."""
    if not target.table_exists(table):
        raise FatalStoreError(
            f"table {table} missing on {target.label}; provision the target first",
            stage="replicating",
        )
    pk = _primary_key(table)
    rows = source.fetchall(f"SELECT * FROM {quote_ident(table)} ORDER BY {quote_ident(pk)}")
    if not rows:
        log.info("%s: 0 rows", table)
        return 0

    target_columns = set(target.column_names(table))
    source_columns = list(rows[0])
    dropped = [c for c in source_columns if c not in target_columns]
    if dropped:
        result.dropped_columns[table] = dropped
        log.warning("%s: columns not on %s, dropped: %s", table, target.label, ", ".join(dropped))
    columns = [c for c in source_columns if c in target_columns]
    for column in APPROVED_DEFAULTS.get(table, {}):
        if column in target_columns and column not in columns:
            columns.append(column)
    sql = upsert_sql(target, table, columns, pk)
    displace = {
        key: _displace_sql(target, table, key, pk)
        for key in _unique_keys(table)
        if key in columns
    }

    written = 0
    displaced = 0
    try:
        with target.transaction():
            for row in rows:
                row = _apply_defaults(table, dict(row), target_columns)
                for key, delete_sql in displace.items():
                    if row.get(key) is not None:
                        cur = target.execute(delete_sql, (row[key], row[pk]))
                        displaced += max(cur.rowcount or 0, 0)
                target.execute(sql, [row.get(c) for c in columns])
                written += 1
                if delay_seconds and written % batch_size == 0 and written < len(rows):
                    sleep(delay_seconds)
            _advance_identity(target, table, pk)
    except target.db_errors as exc:
        raise FatalStoreError(
            f"replicating {table} to {target.label} failed after {written} rows "
            f"(rolled back): {exc}",
            stage="replicating",
        ) from exc
    if displaced:
        result.displaced[table] = displaced
        log.warning(
            "%s: %d rows on %s replaced by source rows with the same unique key",
            table, displaced, target.label,
        )
    log.info("%s: %d rows", table, written)
    return written


def replicate(
    source: Store,
    target: Store,
    table_order: Sequence[str] = TABLE_ORDER,
    batch_size: int = 100,
    delay_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ReplicationResult:
    """Copy each table in `table_order` from source to target.

    Tables absent from the source are logged and skipped.

    Raises:
        FatalStoreError: a table failed to copy; tables already copied stay
            committed, the failing table is rolled back.
    """
    result = ReplicationResult()
    for table in table_order:
        if not source.table_exists(table):
            log.info("%s: missing on %s, skipped", table, source.label)
            result.skipped.append(table)
            continue
        result.tables[table] = copy_table(
            source, target, table, result,
            batch_size=batch_size, delay_seconds=delay_seconds, sleep=sleep,
        )
    return result
