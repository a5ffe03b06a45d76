"""projects_etl.directors

Project-director name canonicalization.

Directors are a fixed governance list, not an owned table.  Spreadsheet
exports spell them inconsistently (all caps, trailing spaces), so every
project's director passes through an explicit variant → canonical lookup.
There is no fuzzy matching: two spellings are merged only when
the table says so.

Extra variants can be supplied in a YAML file:

    aliases:
      "A. VERO": "Anchy Vero"
      "Fred  Ramos": "Fred Ramos"
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from projects_etl.normalize import trim
from projects_etl.shared import ConfigError

CANONICAL_DIRECTORS: tuple[str, ...] = (
    "Anchy Vero",
    "Paul Pascual",
    "George Urzal",
    "Mario Montenegro",
    "Fred Ramos",
    "Edbert Baligaya",
    "Gerald San Diego",
)

# Case-sensitive; trailing-space variants are listed explicitly.
DIRECTOR_ALIASES: dict[str, str] = {
    "ANCHY VERO": "Anchy Vero",
    "ANCHY VERO ": "Anchy Vero",
    "PAUL PASCUAL": "Paul Pascual",
    "PAUL PASCUAL ": "Paul Pascual",
    "GEORGE URZAL": "George Urzal",
    "GEORGE URZAL ": "George Urzal",
    "MARIO MONTENEGRO": "Mario Montenegro",
    "FRED RAMOS": "Fred Ramos",
    "EDBERT BALIGAYA": "Edbert Baligaya",
    "GERALD SAN DIEGO": "Gerald San Diego",
}


def canonicalize_director(
    raw: Any,
    aliases: dict[str, str] | None = None,
) -> str | None:
    """Return the canonical display name for a director.

    Looks up the raw value, then its trimmed form.  Names absent from the
    table come back trimmed and otherwise unchanged; blank → None.
    """
    if raw is None:
        return None
    table = DIRECTOR_ALIASES if aliases is None else aliases
    name = str(raw)
    if name in table:
        return table[name]
    trimmed = trim(name)
    if trimmed is None:
        return None
    return table.get(trimmed, trimmed)


def is_known_director(name: str | None, aliases: dict[str, str] | None = None) -> bool:
    if name in CANONICAL_DIRECTORS:
        return True
    return aliases is not None and name in aliases.values()


def load_director_aliases(yaml_path: Path) -> dict[str, str]:
    """Return the built-in alias table merged with a YAML alias file.

    Raises:
        ConfigError: if the file lacks an 'aliases' mapping or a target
            name is blank.
        FileNotFoundError: if the file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    extra = data.get("aliases") if isinstance(data, dict) else None
    if not isinstance(extra, dict):
        raise ConfigError(f"{yaml_path}: expected a top-level 'aliases' mapping")

    merged = dict(DIRECTOR_ALIASES)
    for variant, canonical in extra.items():
        target = trim(str(canonical)) if canonical is not None else None
        if target is None:
            raise ConfigError(f"{yaml_path}: alias {variant!r} has a blank target")
        merged[str(variant)] = target
    return merged
