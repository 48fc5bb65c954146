"""chord_etl.verify

Post-write verification, library census, and the operator-facing report.

verify() waits a settle delay, counts the partition once and compares it
with the expected insert count.  A timed-out count query is reported as
"incomplete", never as zero rows.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from chord_etl.batch_writer import BatchWriteResult
from chord_etl.shared import (
    MAIN_LIBRARY,
    PERSONAL_LIBRARY,
    QueryTimeoutError,
    RunCounters,
    StoreError,
)
from chord_etl.store import ChordStore, QueryFilter

log = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    expected: int
    actual: int | None
    matches: bool
    timed_out: bool = False
    error: str | None = None

    @property
    def shortfall(self) -> int | None:
        if self.actual is None:
            return None
        return self.expected - self.actual


def verify(
    store: ChordStore,
    expected_count: int,
    filt: QueryFilter,
    settle_seconds: float = 3.0,
    exact: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> VerificationResult:
    """Count rows matching filt and compare with expected_count.

    exact=False accepts actual >= expected (incremental runs add to rows
    that were already there).
    """
    if settle_seconds > 0:
        sleep(settle_seconds)
    try:
        actual = len(store.query(filt))
    except QueryTimeoutError as exc:
        log.warning("verification count timed out: %s", exc)
        return VerificationResult(expected_count, None, False, timed_out=True, error=str(exc))
    except StoreError as exc:
        log.warning("verification count failed: %s", exc)
        return VerificationResult(expected_count, None, False, error=str(exc))

    matches = actual == expected_count if exact else actual >= expected_count
    return VerificationResult(expected_count, actual, matches)


# ---------------------------------------------------------------------------
# Census
# ---------------------------------------------------------------------------

@dataclass
class LibraryCensus:
    total: int = 0
    main: int = 0
    personal: int = 0
    samples: list[dict[str, Any]] = field(default_factory=list)

    @property
    def other(self) -> int:
        return self.total - self.main - self.personal


def library_census(store: ChordStore, sample_size: int = 5) -> LibraryCensus:
    """Counts of every chord, main-library chords and personal chords."""
    everything = store.query(QueryFilter())
    main = store.query(QueryFilter(library_type=MAIN_LIBRARY))
    personal = store.query(QueryFilter(library_type=PERSONAL_LIBRARY))
    samples = [
        {
            "name": row.get("name"),
            "frets": row.get("frets"),
            "instrument": row.get("instrument"),
            "tuning": row.get("tuning"),
        }
        for row in main[:sample_size]
    ]
    return LibraryCensus(len(everything), len(main), len(personal), samples)


def build_census_report(census: LibraryCensus) -> str:
    lines = [
        "=== Chord Library Census ===",
        f"total    : {census.total}",
        f"main     : {census.main}",
        f"personal : {census.personal}",
        f"other    : {census.other}",
    ]
    if census.samples:
        lines += ["", f"--- First {len(census.samples)} main chords ---"]
        for i, s in enumerate(census.samples, 1):
            lines.append(
                f"  {i}. {s['name']} frets={s['frets']} ({s['instrument']}, {s['tuning']})"
            )
    else:
        lines += ["", "No main-library chords found; run the migration."]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Migration report
# ---------------------------------------------------------------------------

def build_migration_report(
    counters: RunCounters,
    profile_name: str,
    strategy: str,
    inserts: BatchWriteResult | None = None,
    result: VerificationResult | None = None,
    dry_run: bool = False,
) -> str:
    lines = [
        "=== Chord Migration Run Report ===",
        f"profile          : {profile_name}",
        f"strategy         : {strategy}",
        f"dry_run          : {dry_run}",
        "",
        "--- Source ---",
        f"groups_read      : {counters.groups_read}",
        f"variations_read  : {counters.variations_read}",
        f"positions_read   : {counters.positions_read}",
        f"positions_skipped: {counters.positions_skipped}",
        f"transformed      : {counters.records_transformed}",
        f"prioritized      : {counters.records_prioritized}",
        "",
        "--- Reconcile ---",
        f"existing_found     : {counters.existing_found}",
        f"duplicates_skipped : {counters.duplicates_skipped}",
        "",
        "--- Writes ---",
        f"delete_planned   : {counters.delete_planned}",
        f"deleted          : {counters.deleted}",
        f"delete_failed    : {counters.delete_failed}",
        f"insert_planned   : {counters.insert_planned}",
        f"inserted         : {counters.inserted}",
        f"insert_failed    : {counters.insert_failed}",
        f"failed_batches   : {counters.failed_batches}",
        f"degraded_batches : {counters.degraded_batches}",
        f"batch_retries    : {counters.batch_retries}",
    ]

    if inserts is not None and inserts.failed:
        lines += ["", "--- Failed insert chunks ---"]
        for fb in inserts.failed:
            lines.append(
                f"  chunk {fb.label}: {fb.size} item(s), {fb.attempts} attempt(s), {fb.reason}"
            )

    if result is not None:
        lines += ["", "--- Verification ---", f"expected         : {result.expected}"]
        if result.timed_out:
            lines.append("actual           : unknown (count query timed out)")
            lines.append("status           : INCOMPLETE, the count could not be read")
        elif result.actual is None:
            lines.append(f"actual           : unknown ({result.error})")
            lines.append("status           : INCOMPLETE")
        else:
            lines.append(f"actual           : {result.actual}")
            lines.append(f"status           : {'OK' if result.matches else 'MISMATCH'}")

    needs_guidance = (
        counters.insert_failed
        or counters.delete_failed
        or (result is not None and not result.matches)
    )
    if needs_guidance and not dry_run:
        lines += [
            "",
            "--- Next steps ---",
            "  Re-running the same command is safe and converges on the full library.",
            "  If chunks keep failing, lower --batch-size or use a verifying profile.",
            "  Check the remote store's per-request limits if the shortfall persists.",
        ]

    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
