"""projects_etl.reconcile

Post-load checks: compare per-group row counts and money totals between
what the source said and what the store holds.  Counts must match exactly;
sums may differ by at most `tolerance` to absorb floating-point drift.
Nothing here writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from projects_etl.record_mapper import ProjectRecord
from projects_etl.store import Store, quote_ident

SUM_FIELDS: tuple[str, ...] = (
    "updated_contract_amount",
    "contract_billed",
    "updated_contract_balance_net",
)
GROUP_FIELDS: tuple[str | None, ...] = ("project_director", "year", None)

OVERALL = "(all)"
NO_VALUE = "(none)"

DEFAULT_TOLERANCE = 1000.0


def _group_key(value: Any) -> str:
    if value is None:
        return NO_VALUE
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _check_group_by(group_by: str | None) -> None:
    if group_by not in GROUP_FIELDS:
        raise ValueError(f"cannot group by {group_by!r}; expected one of {GROUP_FIELDS}")


@dataclass
class GroupAggregate:
    count: int = 0
    sums: dict[str, float] = field(default_factory=lambda: {f: 0.0 for f in SUM_FIELDS})

    def add(self, values: dict[str, Any]) -> None:
        self.count += 1
        for name in SUM_FIELDS:
            self.sums[name] += float(values.get(name) or 0.0)


def aggregate_records(
    records: Iterable[ProjectRecord],
    group_by: str | None = None,
) -> dict[str, GroupAggregate]:
    _check_group_by(group_by)
    out: dict[str, GroupAggregate] = {}
    for record in records:
        key = OVERALL if group_by is None else _group_key(record.get(group_by))
        out.setdefault(key, GroupAggregate()).add(record.values)
    return out


def aggregate_store(
    store: Store,
    group_by: str | None = None,
    table: str = "projects",
) -> dict[str, GroupAggregate]:
    _check_group_by(group_by)
    sums = ", ".join(
        f"COALESCE(SUM({quote_ident(f)}), 0) AS {quote_ident(f)}" for f in SUM_FIELDS
    )
    if group_by is None:
        sql = f"SELECT COUNT(*) AS row_count, {sums} FROM {quote_ident(table)}"
    else:
        col = quote_ident(group_by)
        sql = (
            f"SELECT {col} AS grp, COUNT(*) AS row_count, {sums} "
            f"FROM {quote_ident(table)} GROUP BY {col}"
        )
    out: dict[str, GroupAggregate] = {}
    for row in store.fetchall(sql):
        key = OVERALL if group_by is None else _group_key(row["grp"])
        out[key] = GroupAggregate(
            count=int(row["row_count"]),
            sums={f: float(row[f] or 0.0) for f in SUM_FIELDS},
        )
    return out


@dataclass
class GroupCheck:
    group: str
    source_count: int
    target_count: int
    source_sums: dict[str, float]
    target_sums: dict[str, float]
    tolerance: float

    @property
    def count_ok(self) -> bool:
        return self.source_count == self.target_count

    @property
    def sum_diffs(self) -> dict[str, float]:
        return {f: self.target_sums[f] - self.source_sums[f] for f in SUM_FIELDS}

    @property
    def sums_ok(self) -> bool:
        return all(abs(d) <= self.tolerance for d in self.sum_diffs.values())

    @property
    def ok(self) -> bool:
        return self.count_ok and self.sums_ok

    def describe(self) -> str:
        mark = "OK" if self.ok else "MISMATCH"
        parts = [f"{self.group}: {mark} count source={self.source_count} target={self.target_count}"]
        for name, diff in self.sum_diffs.items():
            if abs(diff) > self.tolerance:
                parts.append(f"{name} diff={diff:,.2f}")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "ok": self.ok,
            "source_count": self.source_count,
            "target_count": self.target_count,
            "source_sums": self.source_sums,
            "target_sums": self.target_sums,
        }


@dataclass
class ReconciliationReport:
    checks: list[GroupCheck] = field(default_factory=list)
    group_by: str | None = None

    @property
    def mismatches(self) -> list[GroupCheck]:
        return [c for c in self.checks if not c.ok]

    @property
    def matches(self) -> bool:
        return not self.mismatches

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_by": self.group_by,
            "matches": self.matches,
            "checks": [c.to_dict() for c in self.checks],
        }


def reconcile(
    source: dict[str, GroupAggregate],
    target: dict[str, GroupAggregate],
    tolerance: float = DEFAULT_TOLERANCE,
    group_by: str | None = None,
) -> ReconciliationReport:
    """Compare two aggregate maps group by group.

    A group present on only one side is compared against an empty group.
    """
    report = ReconciliationReport(group_by=group_by)
    for key in sorted(set(source) | set(target)):
        src = source.get(key, GroupAggregate())
        tgt = target.get(key, GroupAggregate())
        report.checks.append(
            GroupCheck(
                group=key,
                source_count=src.count,
                target_count=tgt.count,
                source_sums=dict(src.sums),
                target_sums=dict(tgt.sums),
                tolerance=tolerance,
            )
        )
    return report


# ---------------------------------------------------------------------------
# Director summaries
# ---------------------------------------------------------------------------

@dataclass
class DirectorSummary:
    director: str
    project_count: int
    contract_total: float
    billed_total: float
    open_projects: int

    @property
    def average_project_size(self) -> float:
        return self.contract_total / self.project_count if self.project_count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "director": self.director,
            "project_count": self.project_count,
            "contract_total": self.contract_total,
            "billed_total": self.billed_total,
            "open_projects": self.open_projects,
            "average_project_size": self.average_project_size,
        }


def summarize_directors(store: Store, table: str = "projects") -> list[DirectorSummary]:
    """Per-director totals, largest portfolio first."""
    rows = store.fetchall(
        f"""
        SELECT project_director AS director,
               COUNT(*) AS project_count,
               COALESCE(SUM(updated_contract_amount), 0) AS contract_total,
               COALESCE(SUM(contract_billed), 0) AS billed_total,
               SUM(CASE WHEN UPPER(project_status) = 'OPEN' THEN 1 ELSE 0 END) AS open_projects
        FROM {quote_ident(table)}
        GROUP BY project_director
        """
    )
    summaries = [
        DirectorSummary(
            director=_group_key(r["director"]),
            project_count=int(r["project_count"]),
            contract_total=float(r["contract_total"]),
            billed_total=float(r["billed_total"]),
            open_projects=int(r["open_projects"] or 0),
        )
        for r in rows
    ]
    summaries.sort(key=lambda s: (-s.project_count, s.director))
    return summaries
