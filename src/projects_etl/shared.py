"""projects_etl.shared

Shared pieces used by every pipeline mode: the error taxonomy,
RejectWriter, RunCounters, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(ValueError):
    """Raised when settings or a config file are invalid."""


class PipelineError(Exception):
    """Base for pipeline failures; `stage` names where the run stopped."""

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class FatalInputError(PipelineError):
    """Source file missing, unreadable or unparseable.  Raised before any write."""


class FatalStoreError(PipelineError):
    """Store unreachable, or a transaction-level write failed."""


class RowValidationError(PipelineError):
    """One row failed a per-row constraint.  Recorded, never fatal."""

    def __init__(
        self,
        message: str,
        position: int | None = None,
        business_key: str | None = None,
    ) -> None:
        super().__init__(message, stage="loading")
        self.position = position
        self.business_key = business_key


class InvalidTransitionError(PipelineError):
    """Raised when the pipeline state machine is driven out of order."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Raw spreadsheet rows don't share one header set, so the column list is
    fixed by the first rejected row and later extra keys are ignored.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = [str(k) for k in row.keys()] + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {str(k): v for k, v in row.items()}
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_mapped: int = 0
    unknown_directors: int = 0
    batches_committed: int = 0
    tables_provisioned: int = 0
    columns_added: int = 0
    tables_replicated: int = 0
    tables_skipped: int = 0
    rows_replicated: int = 0
    reconcile_groups_checked: int = 0
    reconcile_mismatches: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_rejected": self.rows_rejected,
            "rows_mapped": self.rows_mapped,
            "unknown_directors": self.unknown_directors,
            "batches_committed": self.batches_committed,
            "tables_provisioned": self.tables_provisioned,
            "columns_added": self.columns_added,
            "tables_replicated": self.tables_replicated,
            "tables_skipped": self.tables_skipped,
            "rows_replicated": self.rows_replicated,
            "reconcile_groups_checked": self.reconcile_groups_checked,
            "reconcile_mismatches": self.reconcile_mismatches,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source_paths: dict[str, str | None],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        **source_paths,
        "counters": counters.to_dict(),
        **(extra or {}),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
