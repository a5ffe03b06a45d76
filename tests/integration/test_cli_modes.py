"""End-to-end CLI tests: every --mode against sqlite files in a scratch directory."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from projects_etl.cli import main
from projects_etl.store import SqliteStore

# Unset so the developer's own environment can't leak into a run.
CLEAN_ENV = {
    "DATABASE_URL": None,
    "SOURCE_DATABASE_URL": None,
    "PROJECTS_SOURCE_PATH": None,
    "PROJECTS_SHEET_NAME": None,
    "IMPORT_BATCH_SIZE": None,
    "REPLICATE_DELAY_SECONDS": None,
    "REPLICATE_BATCH_SIZE": None,
    "RECONCILE_TOLERANCE": None,
    "DIRECTOR_ALIASES_PATH": None,
    "LOCAL_DB_PATH": None,
    "LOG_LEVEL": None,
}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workdir(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path) as d:
        yield Path(d)


def _invoke(runner, args, **env):
    return runner.invoke(main, args, env={**CLEAN_ENV, **env})


def _count(db_path, table="projects"):
    store = SqliteStore(str(db_path))
    try:
        return store.count(table)
    finally:
        store.close()


class TestInspectMode:
    def test_lists_headers_and_directors(self, runner, workdir, tracker_csv):
        result = _invoke(runner, ["--mode", "inspect", "--source-path", str(tracker_csv), "--run-id", "insp"])
        assert result.exit_code == 0, result.output
        assert "'PROJECT NAME' -> project_name" in result.output
        assert "Paul Pascual: 2 projects" in result.output
        assert (workdir / "artifacts" / "reports" / "insp.json").exists()


class TestImportMode:
    def test_import_into_sqlite_file(self, runner, workdir, tracker_csv):
        result = _invoke(runner, [
            "--mode", "import",
            "--source-path", str(tracker_csv),
            "--database-url", "sqlite:///target.db",
            "--run-id", "imp",
        ])
        assert result.exit_code == 0, result.output
        assert "[imp] Done: processed=2 inserted=1 updated=1 failed=0 rejected=1" in result.output
        assert "Reconcile by overall: OK" in result.output
        assert _count(workdir / "target.db") == 1

        report = json.loads((workdir / "artifacts" / "reports" / "imp.json").read_text())
        assert report["state"] == "done"
        assert report["counters"]["rows_read"] == 3
        assert report["import"]["load"]["updated"] == 1
        assert (workdir / "artifacts" / "rejects" / "imp.csv").exists()

    def test_source_from_environment(self, runner, workdir, tracker_csv):
        result = _invoke(
            runner, ["--run-id", "env"],
            PROJECTS_SOURCE_PATH=str(tracker_csv),
            DATABASE_URL="sqlite:///env.db",
        )
        assert result.exit_code == 0, result.output
        assert _count(workdir / "env.db") == 1

    def test_missing_source_aborts(self, runner, workdir):
        result = _invoke(runner, [
            "--source-path", "missing.xlsx",
            "--database-url", "sqlite:///target.db",
            "--run-id", "missing",
        ])
        assert result.exit_code == 1
        assert "FATAL (validating_input)" in result.output
        report = json.loads((workdir / "artifacts" / "reports" / "missing.json").read_text())
        assert report["state"] == "aborted"

    def test_no_source_configured(self, runner, workdir):
        result = _invoke(runner, ["--database-url", "sqlite:///target.db"])
        assert result.exit_code == 1
        assert "PROJECTS_SOURCE_PATH" in result.output

    def test_bad_batch_size_in_environment(self, runner, workdir, tracker_csv):
        result = _invoke(runner, ["--source-path", str(tracker_csv)], IMPORT_BATCH_SIZE="lots")
        assert result.exit_code == 1
        assert "FATAL (config)" in result.output

    def test_unsupported_store_url(self, runner, workdir, tracker_csv):
        result = _invoke(runner, [
            "--source-path", str(tracker_csv),
            "--database-url", "mysql://localhost/projects",
        ])
        assert result.exit_code == 1
        assert "FATAL (connect)" in result.output


class TestProvisionMode:
    def test_provision_then_rerun(self, runner, workdir):
        first = _invoke(runner, ["--mode", "provision", "--database-url", "sqlite:///p.db"])
        assert first.exit_code == 0, first.output
        assert "tables_created=6" in first.output
        second = _invoke(runner, ["--mode", "provision", "--database-url", "sqlite:///p.db"])
        assert "tables_created=0 columns_added=0" in second.output


class TestReplicateMode:
    def test_copy_between_files(self, runner, workdir, tracker_csv):
        imported = _invoke(runner, [
            "--source-path", str(tracker_csv), "--database-url", "sqlite:///src.db",
        ])
        assert imported.exit_code == 0, imported.output

        result = _invoke(runner, [
            "--mode", "replicate",
            "--source-database-url", "sqlite:///src.db",
            "--database-url", "sqlite:///dst.db",
        ])
        assert result.exit_code == 0, result.output
        assert "projects: 1 rows" in result.output
        assert _count(workdir / "dst.db") == 1

    def test_same_store_refused(self, runner, workdir):
        result = _invoke(runner, [
            "--mode", "replicate",
            "--source-database-url", "sqlite:///same.db",
            "--database-url", "sqlite:///same.db",
        ])
        assert result.exit_code == 1
        assert "FATAL (config)" in result.output


class TestReconcileMode:
    def test_matches_after_import(self, runner, workdir, tracker_csv):
        _invoke(runner, ["--source-path", str(tracker_csv), "--database-url", "sqlite:///r.db"])
        result = _invoke(runner, [
            "--mode", "reconcile",
            "--source-path", str(tracker_csv),
            "--database-url", "sqlite:///r.db",
        ])
        assert result.exit_code == 0, result.output
        assert "Reconcile by project_director: OK" in result.output
        assert "Paul Pascual: projects=1" in result.output

    def test_reports_mismatch(self, runner, workdir, tracker_csv, write_csv):
        _invoke(runner, ["--source-path", str(tracker_csv), "--database-url", "sqlite:///r.db"])
        bigger = write_csv(
            "bigger.csv",
            ["PROJECT NAME", "OVP NUMBER", "PROJECT DIRECTOR", "YEAR", "UPDATED CONTRACT AMOUNT"],
            [["Tower A", "OVP-001", "PAUL PASCUAL", 2023, 300], ["Annex", "OVP-003", "PAUL PASCUAL", 2023, 50000]],
        )
        result = _invoke(runner, [
            "--mode", "reconcile",
            "--source-path", str(bigger),
            "--database-url", "sqlite:///r.db",
        ])
        assert result.exit_code == 0, result.output
        assert "mismatch" in result.output
        assert "Paul Pascual: MISMATCH count source=2 target=1" in result.output

    def test_unprovisioned_store(self, runner, workdir, tracker_csv):
        result = _invoke(runner, [
            "--mode", "reconcile",
            "--source-path", str(tracker_csv),
            "--database-url", "sqlite:///empty.db",
        ])
        assert result.exit_code == 1
        assert "FATAL (reconciling)" in result.output
