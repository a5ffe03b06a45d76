"""projects_etl.sources

Readers for the three shapes a project-tracker export arrives in:

  .xlsx / .xlsm  the workbook itself (openpyxl, read-only)
  .csv           a single sheet saved as CSV
  .json          either a flat array of raw rows, or per-director groupings:
                   [{"director": "...", "projects": [{"data": {...}, "sheet": "..."}]}]
                 or the older mapping form
                   {"<director>": {"projects": [{"sheet": "...", "data": {...}}]}}

Every reader yields SourceRow objects with a 1-based `position` counted over
the rows actually yielded, so positions line up with the rejects file and
the per-row error report.  Anything that prevents reading the file at all is
a FatalInputError; nothing here touches a store.
"""

from __future__ import annotations

import csv
import json
import logging
import zipfile
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from projects_etl.config import DEFAULT_SHEET_NAME
from projects_etl.directors import canonicalize_director
from projects_etl.field_map import is_mapped, normalize_header, normalize_row
from projects_etl.normalize import is_blank
from projects_etl.shared import FatalInputError

log = logging.getLogger(__name__)

WORKBOOK_SUFFIXES = {".xlsx", ".xlsm"}
SUPPORTED_SUFFIXES = WORKBOOK_SUFFIXES | {".csv", ".json"}

_STAGE = "validating_input"


@dataclass
class SourceRow:
    position: int
    data: dict[str, Any]
    director: str | None = None
    sheet: str | None = None


def _fatal(message: str) -> FatalInputError:
    return FatalInputError(message, stage=_STAGE)


def _row_is_blank(values: Any) -> bool:
    return all(is_blank(v) for v in values)


# ---------------------------------------------------------------------------
# Workbook
# ---------------------------------------------------------------------------

def _select_sheet(sheetnames: list[str], sheet_name: str | None, path: Path) -> str:
    """Pick the worksheet to read.

    An explicitly requested sheet must exist.  The default sheet name falls
    back to the first sheet when a workbook doesn't carry it.
    """
    if not sheetnames:
        raise _fatal(f"{path}: workbook has no sheets")
    wanted = sheet_name or DEFAULT_SHEET_NAME
    if wanted in sheetnames:
        return wanted
    if wanted == DEFAULT_SHEET_NAME:
        log.warning(
            "%s: no sheet named %r, reading first sheet %r", path, wanted, sheetnames[0]
        )
        return sheetnames[0]
    raise _fatal(f"{path}: sheet {wanted!r} not found (sheets: {sheetnames})")


def _open_workbook(path: Path):
    try:
        return load_workbook(str(path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise _fatal(f"{path}: cannot open workbook: {exc}") from exc


def _iter_workbook(path: Path, sheet_name: str | None) -> Iterator[SourceRow]:
    wb = _open_workbook(path)
    try:
        title = _select_sheet(list(wb.sheetnames), sheet_name, path)
        header: list[Any] | None = None
        position = 0
        for values in wb[title].iter_rows(values_only=True):
            if _row_is_blank(values):
                continue
            if header is None:
                header = [None if is_blank(v) else str(v) for v in values]
                continue
            data: dict[str, Any] = {}
            for key, value in zip(header, values):
                if key is None:
                    continue
                if key in data and not is_blank(data[key]):
                    continue
                data[key] = value
            position += 1
            yield SourceRow(position=position, data=data, sheet=title)
        if header is None:
            raise _fatal(f"{path}: sheet {title!r} has no header row")
    finally:
        wb.close()


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

def _iter_csv(path: Path) -> Iterator[SourceRow]:
    try:
        with open(path, newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            if not reader.fieldnames:
                raise _fatal(f"{path}: CSV has no header row")
            position = 0
            for row in reader:
                data = {k: v for k, v in row.items() if k is not None}
                if _row_is_blank(data.values()):
                    continue
                position += 1
                yield SourceRow(position=position, data=data, sheet=path.stem)
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise _fatal(f"{path}: cannot read CSV: {exc}") from exc


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise _fatal(f"{path}: cannot parse JSON: {exc}") from exc


def _grouped_entries(payload: Any, path: Path) -> Iterator[tuple[str | None, dict, str | None]]:
    """Yield (director, raw row, sheet) from any accepted JSON shape."""
    if isinstance(payload, dict):
        groups = [
            {"director": name, "projects": (body or {}).get("projects", [])}
            if isinstance(body, dict) else None
            for name, body in payload.items()
        ]
    elif isinstance(payload, list):
        if all(isinstance(item, dict) and "projects" in item for item in payload) and payload:
            groups = payload
        else:
            for item in payload:
                if not isinstance(item, dict):
                    raise _fatal(f"{path}: expected an array of objects, found {type(item).__name__}")
                yield None, item, None
            return
    else:
        raise _fatal(f"{path}: unsupported JSON top-level {type(payload).__name__}")

    for group in groups:
        if not isinstance(group, dict) or not isinstance(group.get("projects"), list):
            raise _fatal(f"{path}: director grouping without a 'projects' array")
        director = group.get("director")
        for entry in group["projects"]:
            if not isinstance(entry, dict):
                raise _fatal(f"{path}: project entry for {director!r} is not an object")
            data = entry.get("data", entry)
            if not isinstance(data, dict):
                raise _fatal(f"{path}: project 'data' for {director!r} is not an object")
            yield director, data, entry.get("sheet")


def _iter_json(path: Path) -> Iterator[SourceRow]:
    payload = _load_json(path)
    position = 0
    for director, data, sheet in _grouped_entries(payload, path):
        if _row_is_blank(data.values()):
            continue
        position += 1
        yield SourceRow(position=position, data=data, director=director, sheet=sheet)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def iter_source_rows(path: str | Path, sheet_name: str | None = None) -> Iterator[SourceRow]:
    """Yield raw rows from a workbook, CSV or JSON export.

    Raises:
        FatalInputError: the file is missing, has an unsupported suffix, or
            cannot be parsed.  For workbooks and JSON this is raised on the
            first next(); callers that must fail before writing should
            materialize the rows first.
    """
    path = Path(path)
    if not path.exists():
        raise _fatal(f"source file not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise _fatal(f"{path}: unsupported source type {suffix!r}")
    if suffix in WORKBOOK_SUFFIXES:
        return _iter_workbook(path, sheet_name)
    if suffix == ".csv":
        return _iter_csv(path)
    return _iter_json(path)


def list_sheets(path: str | Path) -> list[str]:
    path = Path(path)
    if path.suffix.lower() not in WORKBOOK_SUFFIXES:
        return []
    wb = _open_workbook(path)
    try:
        return list(wb.sheetnames)
    finally:
        wb.close()


@dataclass
class HeaderMapping:
    raw: str
    normalized: str
    mapped: bool


@dataclass
class SourceDescription:
    path: str
    sheets: list[str]
    row_count: int
    headers: list[HeaderMapping] = field(default_factory=list)
    director_counts: dict[str, int] = field(default_factory=dict)

    @property
    def unmapped(self) -> list[HeaderMapping]:
        return [h for h in self.headers if not h.mapped]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "sheets": self.sheets,
            "row_count": self.row_count,
            "headers": [
                {"raw": h.raw, "normalized": h.normalized, "mapped": h.mapped}
                for h in self.headers
            ],
            "director_counts": self.director_counts,
        }


def describe_source(
    path: str | Path,
    sheet_name: str | None = None,
    aliases: dict[str, str] | None = None,
) -> SourceDescription:
    """Summarize a source without loading it: headers, mapping, directors."""
    seen: dict[str, HeaderMapping] = {}
    directors: Counter[str] = Counter()
    count = 0
    for row in iter_source_rows(path, sheet_name):
        count += 1
        for raw in row.data:
            if raw is not None and raw not in seen:
                seen[raw] = HeaderMapping(
                    raw=raw, normalized=normalize_header(raw), mapped=is_mapped(raw)
                )
        raw_director = row.director
        if raw_director is None:
            raw_director = normalize_row(row.data).get("project_director")
        name = canonicalize_director(raw_director, aliases)
        directors[name or "(none)"] += 1
    return SourceDescription(
        path=str(path),
        sheets=list_sheets(path),
        row_count=count,
        headers=list(seen.values()),
        director_counts=dict(directors.most_common()),
    )
