"""projects_etl.config

Environment-driven settings.  A `.env` file in the working directory (or an
explicit dotenv path) is loaded first; variables already present in the
environment win over the file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values

from projects_etl.shared import ConfigError, FatalStoreError

DEFAULT_SHEET_NAME = "All PD's"
DEFAULT_LOCAL_DB_PATH = "projects.db"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    source_database_url: str | None = None
    source_path: str | None = None
    sheet_name: str = DEFAULT_SHEET_NAME
    batch_size: int = 50
    replicate_delay_seconds: float = 0.0
    replicate_batch_size: int = 100
    reconcile_tolerance: float = 1000.0
    director_aliases_path: str | None = None
    local_db_path: str = DEFAULT_LOCAL_DB_PATH
    log_level: str = "INFO"


def _get(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")
    return value


def _non_negative_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got {value}")
    return value


def load_settings(
    env: Mapping[str, str] | None = None,
    dotenv_path: str | Path | None = None,
) -> Settings:
    """Resolve Settings from the process environment (plus .env).

    Passing `env` bypasses both os.environ and the dotenv file, which is what
    tests do.

    Raises:
        ConfigError: a numeric or log-level variable has an invalid value.
    """
    if env is None:
        file_values = {
            k: v
            for k, v in dotenv_values(dotenv_path or ".env").items()
            if v is not None
        }
        env = {**file_values, **os.environ}

    log_level = (_get(env, "LOG_LEVEL") or "INFO").upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")

    return Settings(
        database_url=_get(env, "DATABASE_URL"),
        source_database_url=_get(env, "SOURCE_DATABASE_URL"),
        source_path=_get(env, "PROJECTS_SOURCE_PATH"),
        sheet_name=_get(env, "PROJECTS_SHEET_NAME") or DEFAULT_SHEET_NAME,
        batch_size=_positive_int(env, "IMPORT_BATCH_SIZE", 50),
        replicate_delay_seconds=_non_negative_float(env, "REPLICATE_DELAY_SECONDS", 0.0),
        replicate_batch_size=_positive_int(env, "REPLICATE_BATCH_SIZE", 100),
        reconcile_tolerance=_non_negative_float(env, "RECONCILE_TOLERANCE", 1000.0),
        director_aliases_path=_get(env, "DIRECTOR_ALIASES_PATH"),
        local_db_path=_get(env, "LOCAL_DB_PATH") or DEFAULT_LOCAL_DB_PATH,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# Store URL selection
# ---------------------------------------------------------------------------

SQLITE = "sqlite"
POSTGRES = "postgres"


def resolve_store_url(
    url: str | None,
    local_db_path: str = DEFAULT_LOCAL_DB_PATH,
) -> tuple[str, str]:
    """Return (dialect, target) for a destination-selector URL.

    No URL means the local default sqlite file.  For sqlite the target is a
    filesystem path or ':memory:'; for PostgreSQL it is the URL unchanged.

    Raises:
        FatalStoreError: the URL names a scheme no store supports.
    """
    if url is None or not url.strip():
        return SQLITE, local_db_path
    url = url.strip()
    if url.startswith(("postgresql://", "postgres://")):
        return POSTGRES, url
    if url in ("sqlite://:memory:", "sqlite:///:memory:", ":memory:"):
        return SQLITE, ":memory:"
    if url.startswith("sqlite:///"):
        return SQLITE, url[len("sqlite:///"):]
    if "://" not in url and url.endswith((".db", ".sqlite", ".sqlite3")):
        return SQLITE, url
    raise FatalStoreError(f"unsupported store URL {url!r}", stage="connect")
