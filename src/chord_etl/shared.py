"""chord_etl.shared

Shared utilities used by every stage of the chord migration pipeline.
Includes the exception taxonomy, RejectWriter, RunCounters, the per-run
MigrationContext, and report / import-file writers.
"""

from __future__ import annotations

import csv
import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from dotenv import dotenv_values

if TYPE_CHECKING:
    from chord_etl.profiles import MigrationProfile
    from chord_etl.transform import ChordVoicing

DEFAULT_SOURCE_URL = (
    "https://cdn.jsdelivr.net/npm/@tombatossals/chords-db@latest/lib/ukulele.json"
)
DEFAULT_API_BASE = "https://api.instantdb.com"
DEFAULT_INSTRUMENT = "ukulele"
DEFAULT_TUNING = "ukulele_standard"
MAIN_LIBRARY = "main"
PERSONAL_LIBRARY = "personal"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FetchError(Exception):
    """Raised when the source dataset cannot be fetched after all retries."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class ConfigError(Exception):
    """Raised when required credentials or identifiers are missing."""


class StoreError(Exception):
    """Raised when a destination-store read fails."""


class QueryTimeoutError(StoreError):
    """Raised when a store query times out; distinct from an empty result."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for source positions dropped during transform."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {k: _csv_value(v) for k, v in row.items()}
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Source / transform
    groups_read: int = 0
    variations_read: int = 0
    positions_read: int = 0
    positions_skipped: int = 0
    records_transformed: int = 0
    records_prioritized: int = 0
    # Reconcile
    existing_found: int = 0
    duplicates_skipped: int = 0
    # Writes
    delete_planned: int = 0
    deleted: int = 0
    delete_failed: int = 0
    insert_planned: int = 0
    inserted: int = 0
    insert_failed: int = 0
    failed_batches: int = 0
    degraded_batches: int = 0
    batch_retries: int = 0
    # Verification
    verified_expected: int | None = None
    verified_actual: int | None = None
    verification_mismatch: bool = False
    verification_incomplete: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# MigrationContext
# ---------------------------------------------------------------------------

@dataclass
class MigrationContext:
    """Everything one invocation needs, built once and passed to each stage."""

    run_id: str
    profile: "MigrationProfile"
    app_id: str | None = None
    admin_token: str | None = None
    api_base: str = DEFAULT_API_BASE
    source_url: str = DEFAULT_SOURCE_URL
    filter_key: str | None = None
    instrument: str = DEFAULT_INSTRUMENT
    tuning: str = DEFAULT_TUNING
    dry_run: bool = False
    started_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    counters: RunCounters = field(default_factory=RunCounters)

    def require_credentials(self) -> tuple[str, str]:
        missing = []
        if not self.app_id:
            missing.append("VITE_INSTANTDB_APP_ID")
        if not self.admin_token:
            missing.append("INSTANTDB_ADMIN_TOKEN")
        if missing:
            raise ConfigError(
                f"missing required environment variable(s): {', '.join(missing)}"
            )
        return self.app_id, self.admin_token  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# .env support
# ---------------------------------------------------------------------------

def resolve_env(names: Iterable[str], env_file: Path | None = None) -> str | None:
    """First non-empty value among names, process environment before .env."""
    names = list(names)
    for name in names:
        val = os.environ.get(name)
        if val:
            return val
    if env_file is not None and env_file.exists():
        file_values = dotenv_values(env_file)
        for name in names:
            val = file_values.get(name)
            if val:
                return val
    return None


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def write_import_file(records: list["ChordVoicing"], path: Path) -> Path:
    """Write {"chords": [...]} with a generated id on every record."""
    chords = []
    for rec in records:
        chord_id = rec.id or str(uuid.uuid4())
        chords.append({"id": chord_id, **rec.to_record()})
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"chords": chords}, indent=2), encoding="utf-8")
    return path


def write_run_report(
    ctx: MigrationContext,
    mode: str,
    extra: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": ctx.run_id,
        "mode": mode,
        "profile": ctx.profile.name,
        "strategy": ctx.profile.strategy,
        "started_at": ctx.started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": ctx.dry_run,
        "source_url": ctx.source_url,
        "filter_key": ctx.filter_key,
        **extra,
        "counters": ctx.counters.to_dict(),
    }
    report_path = report_dir / f"{ctx.run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
