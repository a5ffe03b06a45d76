"""projects_etl.schema

Declarative table definitions and the idempotent provisioner.

ensure_schema() is safe on every run: it creates what is missing, adds new
columns to existing tables (always nullable, constant defaults only) and
never drops or narrows anything.  Tables are handled in TABLE_ORDER, which
puts every referenced table before the tables that point at it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from projects_etl.config import POSTGRES
from projects_etl.field_map import (
    AMOUNT,
    DATE,
    DAYS,
    DEFAULT_PROJECT_STATUS,
    INTEGER,
    PROJECT_FIELDS,
    STATUS,
    FieldSpec,
)
from projects_etl.record_mapper import AUDIT_COLUMNS
from projects_etl.shared import FatalStoreError
from projects_etl.store import Store, quote_ident

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------

PK = "pk"            # store-assigned integer id
PK_TEXT = "pk_text"  # caller-assigned text id
TEXT = "text"
INT = "int"
REAL = "real"
EPOCH = "epoch"      # Unix seconds
FLAG = "flag"        # 0/1

_TYPES: dict[str, dict[str, str]] = {
    "sqlite": {
        PK: "INTEGER PRIMARY KEY AUTOINCREMENT",
        PK_TEXT: "TEXT PRIMARY KEY",
        TEXT: "TEXT",
        INT: "INTEGER",
        REAL: "REAL",
        EPOCH: "INTEGER",
        FLAG: "INTEGER",
    },
    POSTGRES: {
        PK: "BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY",
        PK_TEXT: "TEXT PRIMARY KEY",
        TEXT: "TEXT",
        INT: "BIGINT",
        REAL: "DOUBLE PRECISION",
        EPOCH: "BIGINT",
        FLAG: "INTEGER",
    },
}

# Non-constant defaults, rendered per dialect.
NOW_TEXT = "now_text"
NOW_EPOCH = "now_epoch"

_DYNAMIC_DEFAULTS: dict[str, dict[str, str]] = {
    "sqlite": {
        NOW_TEXT: "CURRENT_TIMESTAMP",
        NOW_EPOCH: "(CAST(strftime('%s', 'now') AS INTEGER))",
    },
    POSTGRES: {
        NOW_TEXT: "(to_char(now() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'))",
        NOW_EPOCH: "(EXTRACT(EPOCH FROM now())::bigint)",
    },
}


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str
    nullable: bool = True
    default: str | None = None
    unique: bool = False
    references: str | None = None

    @property
    def is_pk(self) -> bool:
        return self.type in (PK, PK_TEXT)

    @property
    def constant_default(self) -> str | None:
        if self.default in (NOW_TEXT, NOW_EPOCH):
            return None
        return self.default

    def ddl(self, dialect: str, additive: bool = False) -> str:
        """Column definition.  `additive` renders the ALTER TABLE form."""
        parts = [quote_ident(self.name), _TYPES[dialect][self.type]]
        if additive:
            if self.constant_default is not None:
                parts.append(f"DEFAULT {self.constant_default}")
            return " ".join(parts)
        if not self.nullable and not self.is_pk:
            parts.append("NOT NULL")
        if self.unique:
            parts.append("UNIQUE")
        if self.default is not None:
            parts.append(f"DEFAULT {_DYNAMIC_DEFAULTS[dialect].get(self.default, self.default)}")
        return " ".join(parts)


@dataclass(frozen=True)
class IndexSpec:
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False

    def ddl(self) -> str:
        kind = "UNIQUE INDEX" if self.unique else "INDEX"
        cols = ", ".join(quote_ident(c) for c in self.columns)
        return f"CREATE {kind} IF NOT EXISTS {quote_ident(self.name)} ON {quote_ident(self.table)} ({cols})"


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: tuple[ColumnSpec, ...]
    indexes: tuple[IndexSpec, ...] = ()

    @property
    def primary_key(self) -> str:
        return next(c.name for c in self.columns if c.is_pk)

    @property
    def has_identity(self) -> bool:
        return any(c.type == PK for c in self.columns)

    def column(self, name: str) -> ColumnSpec | None:
        return next((c for c in self.columns if c.name == name), None)

    def create_sql(self, dialect: str) -> str:
        lines = [c.ddl(dialect) for c in self.columns]
        for c in self.columns:
            if c.references:
                lines.append(f"FOREIGN KEY ({quote_ident(c.name)}) REFERENCES {c.references}")
        body = ",\n    ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {quote_ident(self.name)} (\n    {body}\n)"


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

_KIND_TYPES = {AMOUNT: REAL, DAYS: INT, DATE: EPOCH, INTEGER: INT}


def _project_column(spec: FieldSpec) -> ColumnSpec:
    col_type = _KIND_TYPES.get(spec.kind, TEXT)
    default = None
    if spec.kind in (AMOUNT, DAYS):
        default = "0"
    elif spec.kind == STATUS:
        default = f"'{DEFAULT_PROJECT_STATUS}'"
    return ColumnSpec(
        spec.name,
        col_type,
        nullable=spec.name != "project_name",
        default=default,
    )


PROJECTS = TableSpec(
    "projects",
    (
        ColumnSpec("id", PK),
        ColumnSpec("project_no", TEXT),
        *(_project_column(f) for f in PROJECT_FIELDS),
        *(ColumnSpec(name, TEXT) for name in AUDIT_COLUMNS),
        ColumnSpec("created_at", TEXT, default=NOW_TEXT),
        ColumnSpec("updated_at", TEXT, default=NOW_TEXT),
    ),
    indexes=(
        IndexSpec("ix_projects_project_director", "projects", ("project_director",)),
        IndexSpec("ix_projects_year", "projects", ("year",)),
    ),
)

USERS = TableSpec(
    "users",
    (
        ColumnSpec("id", PK),
        ColumnSpec("username", TEXT, nullable=False, unique=True),
        ColumnSpec("email", TEXT, nullable=False, unique=True),
        ColumnSpec("password_hash", TEXT, nullable=False),
        ColumnSpec("role", TEXT, default="'user'"),
        ColumnSpec("approved", FLAG, default="1"),
        ColumnSpec("full_name", TEXT),
        ColumnSpec("created_at", EPOCH, default=NOW_EPOCH),
        ColumnSpec("updated_at", EPOCH, default=NOW_EPOCH),
    ),
)

CLIENTS = TableSpec(
    "clients",
    (
        ColumnSpec("id", PK),
        ColumnSpec("client_name", TEXT, nullable=False),
        ColumnSpec("address", TEXT),
        ColumnSpec("payment_terms", TEXT),
        ColumnSpec("contact_person", TEXT),
        ColumnSpec("designation", TEXT),
        ColumnSpec("email_address", TEXT),
        ColumnSpec("created_at", TEXT, default=NOW_TEXT),
        ColumnSpec("updated_at", TEXT, default=NOW_TEXT),
    ),
)

PROJECT_ATTACHMENTS = TableSpec(
    "project_attachments",
    (
        ColumnSpec("id", PK),
        ColumnSpec("project_id", INT, nullable=False, references="projects(id)"),
        ColumnSpec("filename", TEXT, nullable=False),
        ColumnSpec("onedrive_item_id", TEXT, nullable=False),
        ColumnSpec("onedrive_web_url", TEXT),
        ColumnSpec("file_size", INT),
        ColumnSpec("uploaded_by", TEXT),
        ColumnSpec("created_at", TEXT, default=NOW_TEXT),
    ),
    indexes=(
        IndexSpec("ix_project_attachments_project_id", "project_attachments", ("project_id",)),
    ),
)

SUPPLIERS = TableSpec(
    "suppliers",
    (
        ColumnSpec("id", PK_TEXT),
        ColumnSpec("name", TEXT, nullable=False),
        ColumnSpec("contact_name", TEXT),
        ColumnSpec("email", TEXT),
        ColumnSpec("phone", TEXT),
        ColumnSpec("address", TEXT),
        ColumnSpec("payment_terms", TEXT),
        ColumnSpec("created_at", TEXT, default=NOW_TEXT),
    ),
)

SUPPLIER_PRODUCTS = TableSpec(
    "supplier_products",
    (
        ColumnSpec("id", PK_TEXT),
        ColumnSpec("supplier_id", TEXT, nullable=False, references="suppliers(id)"),
        ColumnSpec("name", TEXT),
        ColumnSpec("part_no", TEXT),
        ColumnSpec("description", TEXT),
        ColumnSpec("brand", TEXT),
        ColumnSpec("unit", TEXT, default="'pcs'"),
        ColumnSpec("unit_price", REAL),
        ColumnSpec("price_date", TEXT),
    ),
    indexes=(
        IndexSpec("ix_supplier_products_supplier_id", "supplier_products", ("supplier_id",)),
    ),
)

TABLES: tuple[TableSpec, ...] = (
    PROJECTS,
    USERS,
    CLIENTS,
    PROJECT_ATTACHMENTS,
    SUPPLIERS,
    SUPPLIER_PRODUCTS,
)
TABLES_BY_NAME: dict[str, TableSpec] = {t.name: t for t in TABLES}
TABLE_ORDER: tuple[str, ...] = tuple(t.name for t in TABLES)

BUSINESS_KEY_INDEX = IndexSpec("ux_projects_ovp_number", "projects", ("ovp_number",), unique=True)


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

@dataclass
class SchemaReport:
    tables_created: list[str] = field(default_factory=list)
    columns_added: list[str] = field(default_factory=list)
    indexes_ensured: list[str] = field(default_factory=list)
    business_key_unique: bool = False
    business_key_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables_created": self.tables_created,
            "columns_added": self.columns_added,
            "indexes_ensured": self.indexes_ensured,
            "business_key_unique": self.business_key_unique,
            "business_key_error": self.business_key_error,
        }


def _run_ddl(store: Store, sql: str) -> None:
    try:
        with store.transaction():
            store.execute(sql)
    except store.db_errors as exc:
        raise FatalStoreError(f"DDL failed on {store.label}: {exc}\n{sql}", stage="schema") from exc


def _ensure_business_key_index(store: Store, report: SchemaReport) -> None:
    if store.has_unique_index(BUSINESS_KEY_INDEX.table, BUSINESS_KEY_INDEX.columns[0]):
        report.business_key_unique = True
        return
    try:
        with store.transaction():
            store.execute(BUSINESS_KEY_INDEX.ddl())
    except store.row_errors as exc:
        # Existing duplicate keys; loads fall back to delete-then-insert.
        report.business_key_error = str(exc)
        log.warning(
            "%s: cannot create %s (%s); keyed loads will delete-then-insert",
            store.label, BUSINESS_KEY_INDEX.name, exc,
        )
        return
    except store.db_errors as exc:
        raise FatalStoreError(
            f"cannot create {BUSINESS_KEY_INDEX.name} on {store.label}: {exc}", stage="schema"
        ) from exc
    report.business_key_unique = True
    report.indexes_ensured.append(BUSINESS_KEY_INDEX.name)


def ensure_schema(store: Store, tables: tuple[TableSpec, ...] = TABLES) -> SchemaReport:
    """Create or extend every table and index the pipeline depends on.

    Raises:
        FatalStoreError: a CREATE or ALTER statement failed.
    """
    report = SchemaReport()
    for table in tables:
        if not store.table_exists(table.name):
            _run_ddl(store, table.create_sql(store.dialect))
            report.tables_created.append(table.name)
            log.info("%s: created table %s", store.label, table.name)
            continue
        existing = set(store.column_names(table.name))
        for col in table.columns:
            if col.name in existing:
                continue
            _run_ddl(
                store,
                f"ALTER TABLE {quote_ident(table.name)} ADD COLUMN {col.ddl(store.dialect, additive=True)}",
            )
            report.columns_added.append(f"{table.name}.{col.name}")
            log.info("%s: added column %s.%s", store.label, table.name, col.name)

    for table in tables:
        for index in table.indexes:
            _run_ddl(store, index.ddl())
            report.indexes_ensured.append(index.name)

    if any(t.name == BUSINESS_KEY_INDEX.table for t in tables):
        _ensure_business_key_index(store, report)
    return report
