"""projects_etl.record_mapper

Turns one raw source row into one canonical ProjectRecord.

Each canonical field is coerced by its kind (field_map.FieldSpec.kind) and,
when nothing usable was supplied, takes its entry from FIELD_DEFAULTS.  The
director passes through the alias table.  A row without a non-empty project
name is rejected here and never reaches the store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from projects_etl.directors import canonicalize_director, is_known_director
from projects_etl.field_map import (
    AMOUNT,
    DATE,
    DAYS,
    FIELDS_BY_NAME,
    INTEGER,
    PROJECT_FIELDS,
    STATUS,
    TEXT,
    FieldSpec,
    normalize_row,
)
from projects_etl.normalize import (
    coerce_date,
    coerce_days,
    coerce_int,
    coerce_number,
    coerce_text,
)
from projects_etl.shared import RejectWriter, RunCounters
from projects_etl.sources import SourceRow

log = logging.getLogger(__name__)

# Columns written alongside the canonical fields.
AUDIT_COLUMNS = ("source_sheet", "extra_fields", "raw_data")


class RowRejected(Exception):
    """Raised by map_row when a row cannot become a ProjectRecord."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


_COERCERS: dict[str, Callable[[Any], Any]] = {
    TEXT: coerce_text,
    STATUS: coerce_text,
    INTEGER: coerce_int,
    AMOUNT: coerce_number,
    DAYS: lambda v: coerce_days(v, default=None),
    DATE: coerce_date,
}


def _json_blob(value: dict[str, Any]) -> str:
    return json.dumps(
        {str(k): v for k, v in value.items()},
        default=str,
        ensure_ascii=False,
        sort_keys=False,
    )


@dataclass
class ProjectRecord:
    values: dict[str, Any]
    position: int
    source_sheet: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)
    raw_json: str | None = None

    @property
    def ovp_number(self) -> str | None:
        return self.values.get("ovp_number")

    @property
    def project_name(self) -> str | None:
        return self.values.get("project_name")

    @property
    def project_director(self) -> str | None:
        return self.values.get("project_director")

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def to_row(self) -> dict[str, Any]:
        """Column → value mapping for the projects table."""
        row = {spec.name: self.values.get(spec.name) for spec in PROJECT_FIELDS}
        row["source_sheet"] = self.source_sheet
        row["extra_fields"] = _json_blob(self.extras) if self.extras else None
        row["raw_data"] = self.raw_json
        return row


def coerce_field(spec: FieldSpec, raw: Any) -> Any:
    value = _COERCERS[spec.kind](raw)
    return spec.default if value is None else value


def map_row(
    raw_row: dict[Any, Any],
    fields: tuple[FieldSpec, ...] = PROJECT_FIELDS,
    *,
    position: int,
    director: str | None = None,
    sheet: str | None = None,
    aliases: dict[str, str] | None = None,
) -> ProjectRecord:
    """Map one raw row to a ProjectRecord.

    `director` is the grouping-level director of a per-director export; when
    given it overrides the row's own PROJECT DIRECTOR column.

    Raises:
        RowRejected: no non-empty project name could be mapped.
    """
    normalized = normalize_row(raw_row)
    known = {spec.name for spec in fields}

    values: dict[str, Any] = {}
    for spec in fields:
        values[spec.name] = coerce_field(spec, normalized.get(spec.name))

    if "project_director" in values:
        raw_director = director if director is not None else normalized.get("project_director")
        values["project_director"] = canonicalize_director(raw_director, aliases)

    if not values.get("project_name"):
        raise RowRejected("blank_project_name")

    extras = {
        key: coerce_text(value)
        for key, value in normalized.items()
        if key not in known and key not in FIELDS_BY_NAME and coerce_text(value) is not None
    }

    return ProjectRecord(
        values=values,
        position=position,
        source_sheet=sheet,
        extras=extras,
        raw_json=_json_blob(raw_row),
    )


def map_rows(
    source_rows: Iterable[SourceRow],
    rejects: RejectWriter,
    counters: RunCounters,
    aliases: dict[str, str] | None = None,
) -> Iterator[ProjectRecord]:
    """Yield ProjectRecords in source order, diverting rejected rows."""
    warned: set[str] = set()
    for source_row in source_rows:
        counters.rows_read += 1
        try:
            record = map_row(
                source_row.data,
                position=source_row.position,
                director=source_row.director,
                sheet=source_row.sheet,
                aliases=aliases,
            )
        except RowRejected as exc:
            counters.rows_rejected += 1
            rejects.write(source_row.data, exc.reason)
            continue

        name = record.project_director
        if name is not None and not is_known_director(name, aliases):
            counters.unknown_directors += 1
            if name not in warned:
                warned.add(name)
                counters.warnings.append(f"unknown project director {name!r}")
                log.warning("row %d: unknown project director %r", record.position, name)

        counters.rows_mapped += 1
        yield record
