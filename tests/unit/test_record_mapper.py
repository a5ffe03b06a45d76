"""Unit tests for projects_etl.record_mapper: raw row → ProjectRecord."""

import csv
import json

import pytest

from projects_etl.field_map import FIELDS_BY_NAME, PROJECT_FIELDS
from projects_etl.record_mapper import (
    AUDIT_COLUMNS,
    RowRejected,
    coerce_field,
    map_row,
    map_rows,
)
from projects_etl.shared import RejectWriter, RunCounters
from projects_etl.sources import SourceRow

MARCH_15_2023 = 1678838400

SAMPLE_ROW = {
    " PROJECT NAME": "Tower A",
    " OVP NUMBER": "OVP-001",
    " CONTRACT AMOUNT ": "₱1,000,000.00",
    "PO DATE": 45000,
    "PROJECT DIRECTOR": "PAUL PASCUAL",
    "DURATION\r\n(CALENDAR DAYS)": "90",
    "mystery": "x",
}


class TestMapRow:
    def test_sample_row(self):
        record = map_row(SAMPLE_ROW, position=1)
        assert record.project_name == "Tower A"
        assert record.ovp_number == "OVP-001"
        assert record.get("contract_amount") == pytest.approx(1000000.0)
        assert record.get("po_date") == MARCH_15_2023
        assert record.project_director == "Paul Pascual"
        assert record.get("duration_days") == 90
        assert record.get("project_status") == "OPEN"
        assert record.extras == {"mystery": "x"}

    def test_defaults_fill_absent_fields(self):
        record = map_row({"PROJECT NAME": "Tower B"}, position=1)
        assert record.get("updated_contract_amount") == 0.0
        assert record.get("duration_days") == 0
        assert record.get("remarks") is None
        assert record.ovp_number is None

    def test_every_field_present(self):
        record = map_row({"PROJECT NAME": "Tower B"}, position=1)
        assert set(record.values) == set(FIELDS_BY_NAME)

    @pytest.mark.parametrize("name", [None, "", "   "])
    def test_blank_project_name_rejected(self, name):
        with pytest.raises(RowRejected) as exc_info:
            map_row({"PROJECT NAME": name, "OVP NUMBER": "OVP-9"}, position=4)
        assert exc_info.value.reason == "blank_project_name"

    def test_group_director_overrides_row(self):
        record = map_row(SAMPLE_ROW, position=1, director="GEORGE URZAL ")
        assert record.project_director == "George Urzal"

    def test_numeric_code_keeps_text_form(self):
        record = map_row({"PROJECT NAME": "Tower C", "QTN NO.": 1023.0}, position=1)
        assert record.get("qtn_no") == "1023"

    def test_status_trimmed(self):
        record = map_row({"PROJECT NAME": "Tower C", "PROJECT STATUS": "  CLOSED "}, position=1)
        assert record.get("project_status") == "CLOSED"

    def test_overflowing_cells_become_null_or_default(self):
        record = map_row(
            {"PROJECT NAME": "Tower F", "PO DATE": "1e400", "CONTRACT AMOUNT": float("inf")},
            position=1,
        )
        assert record.get("po_date") is None
        assert record.get("contract_amount") == 0.0

    def test_custom_aliases(self):
        record = map_row(
            {"PROJECT NAME": "Tower D", "PD": "A. VERO"},
            position=1,
            aliases={"A. VERO": "Anchy Vero"},
        )
        assert record.project_director == "Anchy Vero"

    def test_sheet_and_raw_kept(self):
        record = map_row(SAMPLE_ROW, position=3, sheet="PAUL")
        row = record.to_row()
        assert row["source_sheet"] == "PAUL"
        assert json.loads(row["raw_data"])[" PROJECT NAME"] == "Tower A"
        assert json.loads(row["extra_fields"]) == {"mystery": "x"}

    def test_to_row_columns(self):
        row = map_row({"PROJECT NAME": "Tower E"}, position=1).to_row()
        assert list(row) == [f.name for f in PROJECT_FIELDS] + list(AUDIT_COLUMNS)
        assert row["extra_fields"] is None


class TestCoerceField:
    def test_amount_garbage_takes_default(self):
        assert coerce_field(FIELDS_BY_NAME["contract_billed"], "TBA") == 0.0

    def test_integer(self):
        assert coerce_field(FIELDS_BY_NAME["year"], "2023") == 2023

    def test_date_garbage_is_none(self):
        assert coerce_field(FIELDS_BY_NAME["start_date"], "soon") is None


class TestMapRows:
    def _rows(self):
        return [
            SourceRow(1, {"PROJECT NAME": "Tower A", "PROJECT DIRECTOR": "FRED RAMOS"}),
            SourceRow(2, {"PROJECT NAME": "", "OVP NUMBER": "OVP-2"}),
            SourceRow(3, {"PROJECT NAME": "Tower C", "PROJECT DIRECTOR": "Jane Doe"}),
            SourceRow(4, {"PROJECT NAME": "Tower D", "PROJECT DIRECTOR": "Jane Doe"}),
        ]

    def test_counters_and_rejects(self, tmp_path):
        rejects = RejectWriter(tmp_path / "rejects.csv")
        counters = RunCounters()
        records = list(map_rows(self._rows(), rejects, counters))
        rejects.close()

        assert [r.position for r in records] == [1, 3, 4]
        assert counters.rows_read == 4
        assert counters.rows_rejected == 1
        assert counters.rows_mapped == 3
        assert rejects.count == 1

        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows[0]["OVP NUMBER"] == "OVP-2"
        assert rows[0]["_reject_reason"] == "blank_project_name"

    def test_unknown_director_warned_once(self, tmp_path):
        rejects = RejectWriter(tmp_path / "rejects.csv")
        counters = RunCounters()
        list(map_rows(self._rows(), rejects, counters))
        rejects.close()
        assert counters.unknown_directors == 2
        assert counters.warnings == ["unknown project director 'Jane Doe'"]

    def test_no_rejects_no_file(self, tmp_path):
        rejects = RejectWriter(tmp_path / "rejects.csv")
        counters = RunCounters()
        list(map_rows(self._rows()[:1], rejects, counters))
        rejects.close()
        assert not (tmp_path / "rejects.csv").exists()
