"""projects_etl.field_map

Canonical `projects` fields and the raw spreadsheet headers that feed them.

Every field lists its raw header variants in priority order: the first
variant is the current workbook header, later ones are older spreadsheet
revisions and historical staging-table column names.  New spreadsheet
revisions are supported by extending the alias lists here.

Headers are matched on their cleaned form (normalize.clean_header), so
case, padding spaces, embedded CR/LF and the escaped-text form of CR/LF
don't matter.  A header no field claims is passed through under its
cleaned form rather than dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from projects_etl.normalize import clean_header, is_blank

# ---------------------------------------------------------------------------
# Field kinds
# ---------------------------------------------------------------------------

TEXT = "text"
INTEGER = "integer"
AMOUNT = "amount"
DAYS = "days"
DATE = "date"
STATUS = "status"

FIELD_KINDS = frozenset({TEXT, INTEGER, AMOUNT, DAYS, DATE, STATUS})

DEFAULT_PROJECT_STATUS = "OPEN"

# Declarative per-kind defaults; a field absent from the source (or blank)
# takes the default for its kind unless FIELD_DEFAULTS overrides it.
KIND_DEFAULTS: dict[str, Any] = {
    TEXT: None,
    INTEGER: None,
    AMOUNT: 0.0,
    DAYS: 0,
    DATE: None,
    STATUS: DEFAULT_PROJECT_STATUS,
}


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str
    aliases: tuple[str, ...] = ()

    @property
    def default(self) -> Any:
        return FIELD_DEFAULTS[self.name]

    def variants(self) -> tuple[str, ...]:
        """Raw header variants in priority order, the canonical id last."""
        return self.aliases + (self.name,)


def _f(name: str, kind: str, *aliases: str) -> FieldSpec:
    return FieldSpec(name=name, kind=kind, aliases=tuple(aliases))


# ---------------------------------------------------------------------------
# Canonical project fields
# ---------------------------------------------------------------------------

PROJECT_FIELDS: tuple[FieldSpec, ...] = (
    _f("item_no", INTEGER, " Item No.", "ITEM NO."),
    _f("year", INTEGER, " YEAR"),
    _f("am", TEXT, " AM", "ACCOUNT MANAGER"),
    _f("ovp_number", TEXT, " OVP NUMBER", "OVP NO."),
    _f("po_number", TEXT, "PO NO.", "PO NUMBER", "po_no"),
    _f("po_date", DATE, "PO DATE"),
    _f("client_status", TEXT, " CLIENT STATUS"),
    _f("account_name", TEXT, " ACCOUNT NAME"),
    _f("project_name", TEXT, " PROJECT NAME"),
    _f("project_category", TEXT, " PROJECT CATEGORY"),
    _f("project_location", TEXT, " PROJECT LOCATION"),
    _f("scope_of_work", TEXT, " SCOPE OF WORK"),
    _f("qtn_no", TEXT, " QTN NO."),
    _f("ovp_category", TEXT, " OVP CATEGORY"),
    _f("contract_amount", AMOUNT, " CONTRACT AMOUNT "),
    _f("updated_contract_amount", AMOUNT, " UPDATED CONTRACT AMOUNT "),
    _f("down_payment_percent", AMOUNT, "DOWN PAYMENT %"),
    _f("retention_percent", AMOUNT, "RETENTION %"),
    _f("start_date", DATE, "START DATE"),
    _f("duration_days", DAYS, "DURATION\r\n(CALENDAR DAYS)", "duration_text"),
    _f("completion_date", DATE, "COMPLETION DATE"),
    _f("payment_schedule", TEXT, " PAYMENT SCHEDULE\r\n(DP-PB-RET)"),
    _f("payment_terms", TEXT, " PAYMENT TERMS\r\n(DAYS)", "payment_terms_days"),
    _f("bonds_requirement", TEXT, " BONDS REQUIREMENT"),
    _f("project_director", TEXT, "PROJECT DIRECTOR", "PD"),
    _f("client_approver", TEXT, "CLIENT APPROVER"),
    _f("progress_billing_schedule", TEXT, "PROGRESS BILLING SCHEDULE"),
    _f("mobilization_date", DATE, "MOBILIZATION DATE"),
    _f("updated_completion_date", DATE, "UPDATED COMPLETION DATE"),
    _f("project_status", STATUS, "PROJECT STATUS"),
    _f("actual_site_progress_percent", AMOUNT, "% - ACTUAL SITE PROGRESS"),
    _f("actual_progress", AMOUNT, "ACTUAL PROGRESS"),
    _f("evaluated_progress_percent", AMOUNT, "% - EVALUATED PROGRESS"),
    _f("evaluated_progress", AMOUNT, "EVALUATED PROGRESS\r\n(EP)"),
    _f("for_rfb_percent", AMOUNT, " % - FOR RFB (EVALUATED  - CONTRACT BILLED GROSS)"),
    _f("for_rfb_amount", AMOUNT, "FOR RFB (EP-CB)"),
    _f("rfb_date", DATE, "RFB DATE"),
    _f("type_of_rfb", TEXT, "TYPE OF RFB (DP, PB, FB, RET)"),
    _f("work_in_progress_ap", AMOUNT, "WORK IN PROGRESS\r\n(UC-AP)", "work_in_progress_uc_ap"),
    _f("work_in_progress_ep", AMOUNT, "WORK IN PROGRESS\r\n(UC-EP)", "work_in_progress_uc_ep"),
    _f(
        "updated_contract_balance_percent", AMOUNT,
        "% - UPDATED CONTRACT BALANCE\r\n(UC - Updated Contract Billed) Gross",
        "updated_contract_balance_percent_gross",
    ),
    _f("total_contract_balance", AMOUNT, "TOTAL CONTRACT BALANCE (UCA-CB)"),
    _f(
        "updated_contract_balance_net_percent", AMOUNT,
        "% - UPDATED CONTRACT BALANCE\r\n(UCA-CB)Net",
        "updated_contract_balance_percent_net",
    ),
    _f("updated_contract_balance_net", AMOUNT, "UPDATED CONTRACT BALANCE\r\n(UCA-CB)Net"),
    _f("remarks", TEXT, "REMARKS"),
    _f("contract_billed_gross_percent", AMOUNT, "% - CONTRACT BILLED GROSS (RFB)"),
    _f("contract_billed", AMOUNT, "CONTRACT  BILLED\r\n(CB)"),
    _f(
        "contract_billed_net_percent", AMOUNT,
        "% - CONTRACT BILLED NET (INVOICED)", "CONTRACT BILLED NET %",
    ),
    _f(
        "amount_contract_billed_net", AMOUNT,
        "CONTRACT BILLED NET (INVOICED)", "CONTRACT BILLED NET",
    ),
    _f(
        "for_retention_billing_percent", AMOUNT,
        "% - FOR RETENTION BILLING", "FOR RETENTION BILLING %",
    ),
    _f("amount_for_retention_billing", AMOUNT, "FOR RETENTION BILLING"),
    _f("retention_status", TEXT, "RETENTION STATUS"),
    _f("unevaluated_progress", AMOUNT, "UN-EVALUATED PROGRESS", "un_evaluated_progress"),
)

FIELDS_BY_NAME: dict[str, FieldSpec] = {f.name: f for f in PROJECT_FIELDS}

# Single place every field default is documented.
FIELD_DEFAULTS: dict[str, Any] = {f.name: KIND_DEFAULTS[f.kind] for f in PROJECT_FIELDS}

REQUIRED_FIELDS = frozenset({"project_name"})


# ---------------------------------------------------------------------------
# Alias table
# ---------------------------------------------------------------------------

def build_alias_table(fields: tuple[FieldSpec, ...]) -> dict[str, tuple[str, int]]:
    """Return cleaned header → (canonical id, priority).

    Raises ValueError when two fields claim the same cleaned header, since
    that would make normalization depend on table order.
    """
    table: dict[str, tuple[str, int]] = {}
    for spec in fields:
        if spec.kind not in FIELD_KINDS:
            raise ValueError(f"unknown kind {spec.kind!r} for field {spec.name!r}")
        for priority, variant in enumerate(spec.variants()):
            cleaned = clean_header(variant)
            owner = table.get(cleaned)
            if owner is not None and owner[0] != spec.name:
                raise ValueError(
                    f"header {variant!r} cleans to {cleaned!r}, already claimed "
                    f"by {owner[0]!r}; cannot also map to {spec.name!r}"
                )
            if owner is None:
                table[cleaned] = (spec.name, priority)
    return table


HEADER_ALIASES: dict[str, tuple[str, int]] = build_alias_table(PROJECT_FIELDS)

# Headers that don't match any alias sort after every known variant.
_UNMAPPED_PRIORITY = 1_000


# ---------------------------------------------------------------------------
# HeaderNormalizer
# ---------------------------------------------------------------------------

def normalize_header(raw: Any) -> str:
    """Map a raw header to its canonical field id, or its cleaned form."""
    cleaned = clean_header(raw)
    hit = HEADER_ALIASES.get(cleaned)
    return hit[0] if hit else cleaned


def is_mapped(raw: Any) -> bool:
    return clean_header(raw) in HEADER_ALIASES


def header_priority(raw: Any) -> int:
    """Position of raw's variant within its field's alias list (0 = preferred)."""
    hit = HEADER_ALIASES.get(clean_header(raw))
    return hit[1] if hit else _UNMAPPED_PRIORITY


def normalize_row(raw_row: dict[Any, Any]) -> dict[str, Any]:
    """Re-key a raw row by normalized header id.

    When several raw headers land on the same id (e.g. a real-newline and an
    escaped-newline copy of one column), the non-blank value from the
    highest-priority variant wins; ties keep source column order.
    """
    out: dict[str, Any] = {}
    ranks: dict[str, int] = {}
    for raw_key, value in raw_row.items():
        if raw_key is None or clean_header(raw_key) == "":
            continue
        field_id = normalize_header(raw_key)
        rank = header_priority(raw_key)
        if field_id not in out:
            out[field_id] = value
            ranks[field_id] = rank
            continue
        current_blank = is_blank(out[field_id])
        if is_blank(value):
            continue
        if current_blank or rank < ranks[field_id]:
            out[field_id] = value
            ranks[field_id] = rank
    return out
