"""projects_etl.upsert

Idempotent batch writes of ProjectRecords.

Each upsert_batch() call is one transaction and each row gets its own
savepoint, so a row that violates a constraint is rolled back and recorded
while the rest of the batch commits.  Any other store error rolls back the
whole batch and surfaces as FatalStoreError.

Insert vs replace:
  - unique index on the business key: INSERT ... ON CONFLICT DO UPDATE,
    which keeps the row's id
  - no unique index: DELETE rows with the same key, then INSERT
  - scope_field (e.g. project_director): every scope in the batch is cleared
    at the start of the transaction, so keyless rows are idempotent too
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from projects_etl.field_map import REQUIRED_FIELDS
from projects_etl.record_mapper import ProjectRecord
from projects_etl.shared import FatalStoreError, RowValidationError, RunCounters
from projects_etl.store import Store, quote_ident

log = logging.getLogger(__name__)

DEFAULT_BUSINESS_KEY = "ovp_number"


@dataclass
class RowError:
    position: int
    business_key: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "business_key": self.business_key,
            "message": self.message,
        }


@dataclass
class ImportBatchResult:
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[RowError] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "ImportBatchResult") -> "ImportBatchResult":
        self.processed += other.processed
        self.inserted += other.inserted
        self.updated += other.updated
        self.failed += other.failed
        self.errors.extend(other.errors)
        return self

    def record_failure(self, record: ProjectRecord, key: str | None, message: str) -> None:
        self.failed += 1
        self.errors.append(RowError(record.position, key, message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "succeeded": self.succeeded,
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------

def _now_text() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _insert_sql(store: Store, table: str, columns: Sequence[str]) -> str:
    cols = ", ".join(quote_ident(c) for c in columns)
    return (
        f"INSERT INTO {quote_ident(table)} ({cols}) "
        f"VALUES ({store.placeholders(len(columns))})"
    )


def upsert_sql(store: Store, table: str, columns: Sequence[str], conflict: str) -> str:
    """INSERT ... ON CONFLICT (conflict) DO UPDATE SET every other column."""
    assignments = ", ".join(
        f"{quote_ident(c)} = excluded.{quote_ident(c)}" for c in columns if c != conflict
    )
    sql = _insert_sql(store, table, columns) + f" ON CONFLICT ({quote_ident(conflict)})"
    if not assignments:
        return sql + " DO NOTHING"
    return sql + f" DO UPDATE SET {assignments}"


def _delete_where(store: Store, table: str, column: str, value: Any) -> int:
    if value is None:
        cur = store.execute(f"DELETE FROM {quote_ident(table)} WHERE {quote_ident(column)} IS NULL")
    else:
        cur = store.execute(
            f"DELETE FROM {quote_ident(table)} WHERE {quote_ident(column)} = {store.placeholder}",
            (value,),
        )
    return max(cur.rowcount or 0, 0)


def _exists(store: Store, table: str, column: str, value: Any) -> bool:
    row = store.fetchone(
        f"SELECT 1 AS found FROM {quote_ident(table)} "
        f"WHERE {quote_ident(column)} = {store.placeholder}",
        (value,),
    )
    return row is not None


def _check_required(record: ProjectRecord, key: str | None) -> None:
    for name in sorted(REQUIRED_FIELDS):
        value = record.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise RowValidationError(
                f"required field {name!r} is empty", position=record.position, business_key=key
            )


# ---------------------------------------------------------------------------
# Batch write
# ---------------------------------------------------------------------------

def upsert_batch(
    store: Store,
    records: Sequence[ProjectRecord],
    business_key: str = DEFAULT_BUSINESS_KEY,
    scope_field: str | None = None,
    table: str = "projects",
) -> ImportBatchResult:
    """Write one batch in a single transaction.

    Raises:
        FatalStoreError: a transaction-level failure; nothing from this batch
            is committed.
    """
    result = ImportBatchResult()
    if not records:
        return result

    stamp = _now_text()
    unique = store.has_unique_index(table, business_key)
    try:
        with store.transaction():
            if scope_field is not None:
                for scope in dict.fromkeys(r.get(scope_field) for r in records):
                    removed = _delete_where(store, table, scope_field, scope)
                    log.debug("cleared %d %s rows for %s=%r", removed, table, scope_field, scope)

            for record in records:
                result.processed += 1
                key = record.get(business_key)
                row = record.to_row()
                row["updated_at"] = stamp
                columns = list(row)
                try:
                    with store.savepoint():
                        _check_required(record, key)
                        if key is None:
                            store.execute(_insert_sql(store, table, columns), list(row.values()))
                            replaced = False
                        elif unique:
                            replaced = _exists(store, table, business_key, key)
                            store.execute(
                                upsert_sql(store, table, columns, business_key),
                                list(row.values()),
                            )
                        else:
                            replaced = _delete_where(store, table, business_key, key) > 0
                            store.execute(_insert_sql(store, table, columns), list(row.values()))
                except RowValidationError as exc:
                    result.record_failure(record, key, str(exc))
                    continue
                except store.row_errors as exc:
                    result.record_failure(record, key, f"{type(exc).__name__}: {exc}")
                    continue
                if replaced:
                    result.updated += 1
                else:
                    result.inserted += 1
    except store.db_errors as exc:
        raise FatalStoreError(
            f"batch write to {table} on {store.label} rolled back: {exc}", stage="loading"
        ) from exc
    return result


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

def plan_batches(
    records: Sequence[ProjectRecord],
    batch_size: int,
    scope_field: str | None = None,
) -> list[list[ProjectRecord]]:
    """Split records into batches.

    With a scope field every scope is exactly one batch, since the scope is
    cleared once per transaction.  Otherwise fixed-size chunks in order.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if scope_field is not None:
        groups: dict[Any, list[ProjectRecord]] = {}
        for record in records:
            groups.setdefault(record.get(scope_field), []).append(record)
        return list(groups.values())
    return [list(records[i:i + batch_size]) for i in range(0, len(records), batch_size)]


def dedupe_last_wins(
    records: Iterable[ProjectRecord],
    business_key: str = DEFAULT_BUSINESS_KEY,
) -> list[ProjectRecord]:
    """Keep the last record per business key; keyless records are all kept.

    Output keeps source order of the surviving records.
    """
    records = list(records)
    last: dict[Any, int] = {}
    for i, record in enumerate(records):
        key = record.get(business_key)
        if key is not None:
            last[key] = i
    return [
        r for i, r in enumerate(records)
        if r.get(business_key) is None or last[r.get(business_key)] == i
    ]


def load_records(
    store: Store,
    records: Sequence[ProjectRecord],
    batch_size: int = 50,
    business_key: str = DEFAULT_BUSINESS_KEY,
    scope_field: str | None = None,
    table: str = "projects",
    counters: RunCounters | None = None,
) -> ImportBatchResult:
    """Run every batch in order and merge the results."""
    total = ImportBatchResult()
    batches = plan_batches(records, batch_size, scope_field)
    for n, batch in enumerate(batches, 1):
        result = upsert_batch(store, batch, business_key, scope_field, table)
        total.merge(result)
        if counters is not None:
            counters.batches_committed += 1
        log.info(
            "batch %d/%d: processed=%d inserted=%d updated=%d failed=%d",
            n, len(batches), result.processed, result.inserted, result.updated, result.failed,
        )
    return total


def clear_table(store: Store, table: str = "projects") -> int:
    """Delete every row of `table` in one transaction; returns rows removed.

    Raises:
        FatalStoreError: the delete failed (e.g. rows still referenced).
    """
    try:
        with store.transaction():
            removed = store.count(table)
            store.execute(f"DELETE FROM {quote_ident(table)}")
    except store.db_errors as exc:
        raise FatalStoreError(f"cannot clear {table} on {store.label}: {exc}", stage="loading") from exc
    log.warning("cleared %d rows from %s on %s", removed, table, store.label)
    return removed
