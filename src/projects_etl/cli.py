"""projects_etl.cli

Unified CLI entrypoint for the project-tracker pipeline.

Modes (--mode):
  provision   create/extend tables and indexes on DATABASE_URL
  import      read, map and load a tracker export, then reconcile (default)
  replicate   copy every table from SOURCE_DATABASE_URL to DATABASE_URL
  reconcile   compare a tracker export with what DATABASE_URL holds
  inspect     show a source's header mapping and director counts

Every option falls back to environment configuration (and .env), so the
bare commands work once the environment is set:

    python -m projects_etl.cli --mode import
    python -m projects_etl.cli --mode import --scope director
    python -m projects_etl.cli --mode replicate

Exit status is 0 when a run completes, per-row failures included, and 1
when it is aborted.
"""

from __future__ import annotations

import dataclasses
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click

from projects_etl.config import Settings, load_settings, resolve_store_url
from projects_etl.directors import load_director_aliases
from projects_etl.pipeline import read_records, reconcile_all, run_import
from projects_etl.reconcile import ReconciliationReport, summarize_directors
from projects_etl.replicate import replicate
from projects_etl.schema import ensure_schema
from projects_etl.shared import (
    ConfigError,
    FatalInputError,
    FatalStoreError,
    PipelineError,
    RejectWriter,
    RunCounters,
    utc_now_iso,
    write_run_report,
)
from projects_etl.sources import describe_source
from projects_etl.store import open_store
from projects_etl.upsert import ImportBatchResult

MODES = ["provision", "import", "replicate", "reconcile", "inspect"]
SCOPES = {"key": None, "director": "project_director"}

# Row errors echoed individually before the list is truncated.
MAX_ERRORS_SHOWN = 50


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_aliases(settings: Settings) -> dict[str, str] | None:
    if not settings.director_aliases_path:
        return None
    path = Path(settings.director_aliases_path)
    try:
        return load_director_aliases(path)
    except FileNotFoundError as exc:
        raise FatalInputError(f"director alias file not found: {path}", stage="config") from exc
    except ConfigError as exc:
        raise FatalInputError(str(exc), stage="config") from exc


def _require_source(settings: Settings) -> str:
    if not settings.source_path:
        raise FatalInputError(
            "no source file: pass --source-path or set PROJECTS_SOURCE_PATH",
            stage="validating_input",
        )
    return settings.source_path


def _echo_load_result(run_id: str, result: ImportBatchResult, counters: RunCounters) -> None:
    click.echo(
        f"[{run_id}] Done: "
        f"processed={result.processed} "
        f"inserted={result.inserted} "
        f"updated={result.updated} "
        f"failed={result.failed} "
        f"rejected={counters.rows_rejected} "
        f"unknown_directors={counters.unknown_directors}"
    )
    for err in result.errors[:MAX_ERRORS_SHOWN]:
        click.echo(
            f"[{run_id}]   row {err.position} ({err.business_key or '-'}): {err.message}"
        )
    if len(result.errors) > MAX_ERRORS_SHOWN:
        click.echo(f"[{run_id}]   ... {len(result.errors) - MAX_ERRORS_SHOWN} more in run report")


def _echo_reconciliation(run_id: str, reports: dict[str, ReconciliationReport]) -> None:
    for name, report in reports.items():
        if report.matches:
            click.echo(f"[{run_id}] Reconcile by {name}: OK ({len(report.checks)} groups)")
            continue
        click.echo(
            f"[{run_id}] Reconcile by {name}: {len(report.mismatches)} mismatch(es) "
            f"of {len(report.checks)} groups"
        )
        for check in report.mismatches:
            click.echo(f"[{run_id}]   {check.describe()}")


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_provision(run_id: str, settings: Settings, counters: RunCounters) -> dict[str, Any]:
    with open_store(settings.database_url, settings.local_db_path) as store:
        schema = ensure_schema(store)
    counters.tables_provisioned += len(schema.tables_created)
    counters.columns_added += len(schema.columns_added)
    click.echo(
        f"[{run_id}] Done: tables_created={len(schema.tables_created)} "
        f"columns_added={len(schema.columns_added)} "
        f"business_key_unique={schema.business_key_unique}"
    )
    if schema.business_key_error:
        click.echo(
            f"[{run_id}] WARNING: unique ovp_number index not created: "
            f"{schema.business_key_error}",
            err=True,
        )
    return {"schema": schema.to_dict()}


def _run_import(
    run_id: str,
    settings: Settings,
    counters: RunCounters,
    rejects: RejectWriter,
    scope: str,
    replace_all: bool,
) -> dict[str, Any]:
    source_path = _require_source(settings)
    aliases = _load_aliases(settings)
    with open_store(settings.database_url, settings.local_db_path) as store:
        click.echo(f"[{run_id}] Importing {source_path} into {store.label} (scope={scope})")
        report = run_import(
            store,
            source_path,
            settings,
            run_id,
            rejects,
            counters,
            replace_all=replace_all,
            scope_field=SCOPES[scope],
            aliases=aliases,
        )
    if report.rows_cleared:
        click.echo(f"[{run_id}] Cleared {report.rows_cleared} existing project rows")
    _echo_load_result(run_id, report.load, counters)
    _echo_reconciliation(run_id, report.reconciliation)
    if rejects.count:
        click.echo(f"[{run_id}] Rejected rows: {rejects.path}")
    return {"import": report.to_dict()}


def _run_replicate(run_id: str, settings: Settings, counters: RunCounters) -> dict[str, Any]:
    source = resolve_store_url(settings.source_database_url, settings.local_db_path)
    target = resolve_store_url(settings.database_url, settings.local_db_path)
    if source == target:
        raise FatalStoreError(
            "source and target stores are the same; set SOURCE_DATABASE_URL and DATABASE_URL",
            stage="config",
        )
    with open_store(settings.source_database_url, settings.local_db_path) as src, \
            open_store(settings.database_url, settings.local_db_path) as tgt:
        click.echo(f"[{run_id}] Replicating {src.label} -> {tgt.label}")
        schema = ensure_schema(tgt)
        counters.tables_provisioned += len(schema.tables_created)
        counters.columns_added += len(schema.columns_added)
        result = replicate(
            src,
            tgt,
            batch_size=settings.replicate_batch_size,
            delay_seconds=settings.replicate_delay_seconds,
        )
    counters.tables_replicated += len(result.tables)
    counters.tables_skipped += len(result.skipped)
    counters.rows_replicated += result.total_rows
    for table, n in result.tables.items():
        click.echo(f"[{run_id}]   {table}: {n} rows")
    for table in result.skipped:
        click.echo(f"[{run_id}]   {table}: missing on source, skipped")
    for table, cols in result.dropped_columns.items():
        counters.warnings.append(f"{table}: dropped columns {cols}")
        click.echo(f"[{run_id}]   {table}: dropped columns {', '.join(cols)}")
    for table, n in result.displaced.items():
        counters.warnings.append(f"{table}: {n} target rows replaced on unique key")
        click.echo(f"[{run_id}]   {table}: {n} target rows replaced on unique key")
    click.echo(
        f"[{run_id}] Done: tables={len(result.tables)} skipped={len(result.skipped)} "
        f"rows={result.total_rows}"
    )
    return {"replication": result.to_dict(), "schema": schema.to_dict()}


def _run_reconcile(
    run_id: str,
    settings: Settings,
    counters: RunCounters,
    rejects: RejectWriter,
) -> dict[str, Any]:
    source_path = _require_source(settings)
    aliases = _load_aliases(settings)
    records = read_records(source_path, settings, rejects, counters, aliases)
    with open_store(settings.database_url, settings.local_db_path) as store:
        if not store.table_exists("projects"):
            raise FatalStoreError(f"no projects table on {store.label}", stage="reconciling")
        reports = reconcile_all(store, records, settings.reconcile_tolerance)
        summaries = summarize_directors(store)
    for rec in reports.values():
        counters.reconcile_groups_checked += len(rec.checks)
        counters.reconcile_mismatches += len(rec.mismatches)
    _echo_reconciliation(run_id, reports)
    for s in summaries:
        click.echo(
            f"[{run_id}]   {s.director}: projects={s.project_count} open={s.open_projects} "
            f"contracts={s.contract_total:,.2f} billed={s.billed_total:,.2f} "
            f"avg={s.average_project_size:,.2f}"
        )
    return {
        "reconciliation": {k: v.to_dict() for k, v in reports.items()},
        "directors": [s.to_dict() for s in summaries],
    }


def _run_inspect(run_id: str, settings: Settings, counters: RunCounters) -> dict[str, Any]:
    source_path = _require_source(settings)
    aliases = _load_aliases(settings)
    desc = describe_source(source_path, settings.sheet_name, aliases)
    counters.rows_read += desc.row_count
    if desc.sheets:
        click.echo(f"[{run_id}] Sheets: {', '.join(desc.sheets)}")
    click.echo(f"[{run_id}] Rows: {desc.row_count}")
    for h in desc.headers:
        flag = "" if h.mapped else "  (unmapped)"
        click.echo(f"[{run_id}]   {h.raw!r} -> {h.normalized}{flag}")
    for name, n in desc.director_counts.items():
        click.echo(f"[{run_id}]   {name}: {n} projects")
    return {"source": desc.to_dict()}


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(MODES),
    show_default=True,
    help="Pipeline stage to run",
)
@click.option("--database-url", default=None, help="Target store URL (default: DATABASE_URL, else local sqlite)")
@click.option("--source-database-url", default=None, help="[replicate] Source store URL (default: SOURCE_DATABASE_URL)")
@click.option("--source-path", default=None, type=click.Path(), help="[import|reconcile|inspect] Tracker export (.xlsx, .csv, .json)")
@click.option("--sheet-name", default=None, help="[import|reconcile|inspect] Workbook sheet")
@click.option("--batch-size", default=None, type=click.IntRange(min=1), help="[import] Rows per transaction")
@click.option(
    "--scope",
    default="key",
    type=click.Choice(list(SCOPES)),
    show_default=True,
    help="[import] Replace by business key, or replace each director's rows wholesale",
)
@click.option("--replace-all", is_flag=True, default=False, help="[import] Clear the projects table before loading")
@click.option("--aliases-path", default=None, type=click.Path(), help="YAML file of extra director aliases")
@click.option("--dotenv-path", default=None, type=click.Path(), help="Load this .env instead of ./.env")
@click.option("--rejects-path", default=None, type=click.Path(), help="Rejected-row CSV (default: artifacts/rejects/<run_id>.csv)")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    database_url: str | None,
    source_database_url: str | None,
    source_path: str | None,
    sheet_name: str | None,
    batch_size: int | None,
    scope: str,
    replace_all: bool,
    aliases_path: str | None,
    dotenv_path: str | None,
    rejects_path: str | None,
    run_id: str | None,
) -> None:
    """Project-tracker normalization and migration CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    counters = RunCounters()

    try:
        settings = load_settings(dotenv_path=dotenv_path)
    except ConfigError as exc:
        click.echo(f"[{run_id}] FATAL (config): {exc}", err=True)
        sys.exit(1)

    overrides = {
        "database_url": database_url,
        "source_database_url": source_database_url,
        "source_path": source_path,
        "sheet_name": sheet_name,
        "batch_size": batch_size,
        "director_aliases_path": aliases_path,
    }
    settings = dataclasses.replace(
        settings, **{k: v for k, v in overrides.items() if v is not None}
    )

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    rejects = RejectWriter(Path(rejects_path or f"./artifacts/rejects/{run_id}.csv"))
    source_paths = {
        "source_path": settings.source_path,
        "rejects_path": str(rejects.path),
    }

    click.echo(f"[{run_id}] Starting {mode} run")

    try:
        if mode == "provision":
            extra = _run_provision(run_id, settings, counters)
        elif mode == "import":
            extra = _run_import(run_id, settings, counters, rejects, scope, replace_all)
        elif mode == "replicate":
            extra = _run_replicate(run_id, settings, counters)
        elif mode == "reconcile":
            extra = _run_reconcile(run_id, settings, counters, rejects)
        else:
            extra = _run_inspect(run_id, settings, counters)
    except PipelineError as exc:
        stage = exc.stage or mode
        click.echo(f"[{run_id}] FATAL ({stage}): {exc}", err=True)
        report_path = write_run_report(
            run_id, started_at, mode, source_paths, counters,
            extra={"state": "aborted", "stage": stage, "error": str(exc)},
        )
        click.echo(f"[{run_id}] Run report: {report_path}")
        sys.exit(1)
    finally:
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, source_paths, counters,
        extra={"state": "done", **extra},
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
