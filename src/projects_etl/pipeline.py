"""projects_etl.pipeline

One import run as an explicit state machine:

    idle → validating_input → schema_ready → loading → reconciling → done

Any fatal error moves the run to `aborted` from whatever state it was in.
Per-row failures during loading are recorded in the batch result and do not
change state.  The whole source is read and mapped before the first write,
so a bad source file aborts with the store untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from projects_etl.config import Settings
from projects_etl.record_mapper import ProjectRecord, map_rows
from projects_etl.reconcile import (
    GROUP_FIELDS,
    ReconciliationReport,
    aggregate_records,
    aggregate_store,
    reconcile,
)
from projects_etl.schema import SchemaReport, ensure_schema
from projects_etl.shared import (
    InvalidTransitionError,
    PipelineError,
    RejectWriter,
    RunCounters,
)
from projects_etl.sources import iter_source_rows
from projects_etl.store import Store
from projects_etl.upsert import (
    DEFAULT_BUSINESS_KEY,
    ImportBatchResult,
    clear_table,
    dedupe_last_wins,
    load_records,
)

log = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    VALIDATING_INPUT = "validating_input"
    SCHEMA_READY = "schema_ready"
    LOADING = "loading"
    RECONCILING = "reconciling"
    DONE = "done"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({PipelineState.DONE, PipelineState.ABORTED})

_NEXT: dict[PipelineState, PipelineState] = {
    PipelineState.IDLE: PipelineState.VALIDATING_INPUT,
    PipelineState.VALIDATING_INPUT: PipelineState.SCHEMA_READY,
    PipelineState.SCHEMA_READY: PipelineState.LOADING,
    PipelineState.LOADING: PipelineState.RECONCILING,
    PipelineState.RECONCILING: PipelineState.DONE,
}


@dataclass
class PipelineRun:
    run_id: str
    state: PipelineState = PipelineState.IDLE
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])

    def can_advance(self, target: PipelineState) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        if target is PipelineState.ABORTED:
            return True
        return _NEXT.get(self.state) is target

    def advance(self, target: PipelineState) -> None:
        if not self.can_advance(target):
            raise InvalidTransitionError(
                f"run {self.run_id}: cannot go from {self.state.value} to {target.value}",
                stage=self.state.value,
            )
        log.debug("run %s: %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def abort(self) -> PipelineState:
        """Move to ABORTED; returns the state the run was in."""
        failed_in = self.state
        if self.state not in TERMINAL_STATES:
            self.advance(PipelineState.ABORTED)
        return failed_in


@dataclass
class ImportRunReport:
    run_id: str
    state: PipelineState
    schema: SchemaReport | None = None
    load: ImportBatchResult = field(default_factory=ImportBatchResult)
    rows_cleared: int = 0
    reconciliation: dict[str, ReconciliationReport] = field(default_factory=dict)

    @property
    def reconciled(self) -> bool:
        return all(r.matches for r in self.reconciliation.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "schema": self.schema.to_dict() if self.schema else None,
            "load": self.load.to_dict(),
            "rows_cleared": self.rows_cleared,
            "reconciled": self.reconciled,
            "reconciliation": {k: v.to_dict() for k, v in self.reconciliation.items()},
        }


def read_records(
    source_path: str | Path,
    settings: Settings,
    rejects: RejectWriter,
    counters: RunCounters,
    aliases: dict[str, str] | None = None,
) -> list[ProjectRecord]:
    """Read and map the whole source.  FatalInputError propagates."""
    rows = iter_source_rows(source_path, settings.sheet_name)
    return list(map_rows(rows, rejects, counters, aliases))


def reconcile_all(
    store: Store,
    records: list[ProjectRecord],
    tolerance: float,
    business_key: str = DEFAULT_BUSINESS_KEY,
) -> dict[str, ReconciliationReport]:
    """Compare deduplicated source records with the store for every grouping."""
    expected = dedupe_last_wins(records, business_key)
    reports: dict[str, ReconciliationReport] = {}
    for group_by in GROUP_FIELDS:
        reports[group_by or "overall"] = reconcile(
            aggregate_records(expected, group_by),
            aggregate_store(store, group_by),
            tolerance=tolerance,
            group_by=group_by,
        )
    return reports


def run_import(
    store: Store,
    source_path: str | Path,
    settings: Settings,
    run_id: str,
    rejects: RejectWriter,
    counters: RunCounters,
    replace_all: bool = False,
    scope_field: str | None = None,
    aliases: dict[str, str] | None = None,
) -> ImportRunReport:
    """Run one full import against `store`.

    Raises:
        FatalInputError, FatalStoreError: the run is aborted; the error's
            `stage` names the state it failed in.
    """
    run = PipelineRun(run_id)
    report = ImportRunReport(run_id=run_id, state=run.state)
    try:
        run.advance(PipelineState.VALIDATING_INPUT)
        records = read_records(source_path, settings, rejects, counters, aliases)
        log.info(
            "run %s: %d rows read, %d mapped, %d rejected",
            run_id, counters.rows_read, len(records), counters.rows_rejected,
        )

        run.advance(PipelineState.SCHEMA_READY)
        report.schema = ensure_schema(store)
        counters.tables_provisioned += len(report.schema.tables_created)
        counters.columns_added += len(report.schema.columns_added)

        run.advance(PipelineState.LOADING)
        if replace_all:
            report.rows_cleared = clear_table(store, "projects")
        report.load = load_records(
            store,
            records,
            batch_size=settings.batch_size,
            scope_field=scope_field,
            counters=counters,
        )

        run.advance(PipelineState.RECONCILING)
        report.reconciliation = reconcile_all(store, records, settings.reconcile_tolerance)
        for rec in report.reconciliation.values():
            counters.reconcile_groups_checked += len(rec.checks)
            counters.reconcile_mismatches += len(rec.mismatches)

        run.advance(PipelineState.DONE)
    except PipelineError as exc:
        failed_in = run.abort()
        if exc.stage is None:
            exc.stage = failed_in.value
        log.error("run %s aborted in %s: %s", run_id, failed_in.value, exc)
        raise
    finally:
        report.state = run.state
    return report
