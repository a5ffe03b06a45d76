"""Unit tests for batch planning and last-wins deduplication in projects_etl.upsert."""

import pytest

from projects_etl.record_mapper import map_row
from projects_etl.upsert import ImportBatchResult, dedupe_last_wins, plan_batches


def _record(position, ovp=None, director=None, amount=0):
    row = {"PROJECT NAME": f"Project {position}", "UPDATED CONTRACT AMOUNT": amount}
    if ovp is not None:
        row["OVP NUMBER"] = ovp
    if director is not None:
        row["PROJECT DIRECTOR"] = director
    return map_row(row, position=position)


class TestPlanBatches:
    def test_fixed_size_chunks(self):
        records = [_record(i) for i in range(1, 6)]
        batches = plan_batches(records, 2)
        assert [[r.position for r in b] for b in batches] == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert plan_batches([], 10) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            plan_batches([_record(1)], 0)

    def test_scope_groups_one_batch_each(self):
        records = [
            _record(1, director="Fred Ramos"),
            _record(2, director="Paul Pascual"),
            _record(3, director="Fred Ramos"),
        ]
        batches = plan_batches(records, 1, scope_field="project_director")
        assert [[r.position for r in b] for b in batches] == [[1, 3], [2]]


class TestDedupeLastWins:
    def test_last_row_per_key_kept(self):
        records = [
            _record(1, "OVP-001", amount=100),
            _record(2, "OVP-002", amount=200),
            _record(3, "OVP-001", amount=300),
        ]
        kept = dedupe_last_wins(records)
        assert [r.position for r in kept] == [2, 3]
        assert kept[1].get("updated_contract_amount") == 300.0

    def test_keyless_rows_all_kept(self):
        records = [_record(1), _record(2), _record(3, "OVP-1")]
        assert len(dedupe_last_wins(records)) == 3


class TestImportBatchResult:
    def test_merge(self):
        a = ImportBatchResult(processed=3, inserted=2, updated=1)
        b = ImportBatchResult(processed=2, inserted=1)
        b.record_failure(_record(7, "OVP-7"), "OVP-7", "boom")
        a.merge(b)
        assert (a.processed, a.inserted, a.updated, a.failed) == (5, 3, 1, 1)
        assert a.succeeded == 4

    def test_to_dict(self):
        result = ImportBatchResult(processed=1)
        result.record_failure(_record(9, "OVP-9"), "OVP-9", "bad row")
        d = result.to_dict()
        assert d["failed"] == 1
        assert d["errors"] == [{"position": 9, "business_key": "OVP-9", "message": "bad row"}]
