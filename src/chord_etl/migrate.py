"""chord_etl.migrate

Unified CLI entrypoint for the chord-library migration.

Modes (--mode):
  migrate  fetch -> transform -> reconcile -> delete/insert batches -> verify (default)
  export   fetch -> transform -> write {"chords": [...]} for a manual dashboard import
  census   count all / main / personal chords in the store and show a few samples

Usage (migrate, default "improved" profile):
    export VITE_INSTANTDB_APP_ID=... INSTANTDB_ADMIN_TOKEN=...
    python -m chord_etl.migrate

Usage (bulk refresh of a single chord group):
    python -m chord_etl.migrate --profile bulk C

Usage (file only):
    python -m chord_etl.migrate --file-only --output-path chords-import.json

Usage (local PostgreSQL mirror):
    python -m chord_etl.migrate --store postgres --db-dsn "$DB_DSN" --profile db

Exit codes: 0 when the pipeline completes, including partial batch failures
(reported, not fatal); 1 on fetch failure, missing credentials, an unreadable
store, or a source that yields no importable voicings.
"""

from __future__ import annotations

import logging
import sys
import time
import traceback
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from chord_etl.batch_writer import BatchWriteResult, delete_in_batches, write_batches
from chord_etl.profiles import (
    DEFAULT_PROFILES_PATH,
    FULL_REPLACE,
    INCREMENTAL,
    VALID_STRATEGIES,
    ProfileValidationError,
    get_profile,
)
from chord_etl.reconcile import ReconcilePlan, reconcile
from chord_etl.shared import (
    DEFAULT_API_BASE,
    DEFAULT_SOURCE_URL,
    MAIN_LIBRARY,
    ConfigError,
    FetchError,
    MigrationContext,
    RejectWriter,
    StoreError,
    resolve_env,
    write_import_file,
    write_run_report,
)
from chord_etl.source import fetch_source_dataset
from chord_etl.store import ChordStore, InstantAdminStore, PgChordStore, QueryFilter, TxStep
from chord_etl.transform import ChordVoicing, TransformResult, prioritize_common, transform
from chord_etl.verify import (
    VerificationResult,
    build_census_report,
    build_migration_report,
    library_census,
    verify,
)

log = logging.getLogger(__name__)

APP_ID_ENV = ("VITE_INSTANTDB_APP_ID", "INSTANTDB_APP_ID")
ADMIN_TOKEN_ENV = ("INSTANTDB_ADMIN_TOKEN",)


class NothingToImportError(Exception):
    """Raised when the source yields zero importable voicings."""


@dataclass
class MigrationOutcome:
    plan: ReconcilePlan
    deletes: BatchWriteResult | None = None
    inserts: BatchWriteResult | None = None
    verification: VerificationResult | None = None


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------

def _load_and_transform(
    ctx: MigrationContext,
    parsed: Any,
    fetch: Callable[[str], Any] | None,
    rejects: RejectWriter | None,
) -> list[ChordVoicing]:
    if parsed is None:
        click.echo(f"[{ctx.run_id}] Fetching {ctx.source_url}")
        parsed = (fetch or fetch_source_dataset)(ctx.source_url)

    result: TransformResult = transform(
        parsed,
        filter_key=ctx.filter_key,
        instrument=ctx.instrument,
        tuning=ctx.tuning,
        rejects=rejects,
    )
    c = ctx.counters
    c.groups_read = result.groups_read
    c.variations_read = result.variations_read
    c.positions_read = result.positions_read
    c.positions_skipped = result.skipped
    c.records_transformed = len(result.records)
    for reason, n in sorted(result.skip_reasons.items()):
        c.warnings.append(f"skipped {n} position(s): {reason}")

    click.echo(
        f"[{ctx.run_id}] Transform: {result.positions_read} positions read, "
        f"{result.skipped} skipped, {len(result.records)} voicings"
    )
    if not result.records:
        scope = f" for key {ctx.filter_key!r}" if ctx.filter_key else ""
        raise NothingToImportError(f"no importable voicings in source{scope}")

    records = result.records
    if not ctx.filter_key and ctx.profile.prioritize_common:
        records, n_common = prioritize_common(records)
        c.records_prioritized = n_common
        click.echo(f"[{ctx.run_id}] Prioritized {n_common} common voicing(s) first")
    return records


def _scope_filter(ctx: MigrationContext, records: list[ChordVoicing]) -> QueryFilter:
    """Partition filter, narrowed to the incoming keys for filtered or incremental runs."""
    if ctx.filter_key or ctx.profile.strategy == INCREMENTAL:
        keys = tuple(sorted({r.key for r in records}))
        return QueryFilter.partition(MAIN_LIBRARY, ctx.instrument, ctx.tuning, keys=keys)
    return QueryFilter.partition(MAIN_LIBRARY, ctx.instrument, ctx.tuning)


def _read_existing(store: ChordStore, filt: QueryFilter) -> list[ChordVoicing]:
    # A timed-out read raises; it is never treated as an empty partition.
    return [ChordVoicing.from_record(row) for row in store.query(filt)]


def _insert_steps(records: list[ChordVoicing]) -> list[TxStep]:
    steps = []
    for rec in records:
        if rec.id is None:
            rec.id = str(uuid.uuid4())
        steps.append(TxStep.upsert(rec.id, rec.to_record()))
    return steps


def run_migration(
    ctx: MigrationContext,
    store: ChordStore,
    parsed: Any = None,
    fetch: Callable[[str], Any] | None = None,
    rejects: RejectWriter | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> MigrationOutcome:
    """Run one migration.  Raises only for fatal conditions.

    Raises:
        FetchError: the source could not be fetched.
        NothingToImportError: the source produced no importable voicings.
        StoreError: the existing partition could not be read.
    """
    profile = ctx.profile
    c = ctx.counters
    records = _load_and_transform(ctx, parsed, fetch, rejects)

    scope = _scope_filter(ctx, records)
    existing = _read_existing(store, scope)
    c.existing_found = len(existing)

    plan = reconcile(
        profile.strategy,
        existing,
        records,
        ctx.instrument,
        ctx.tuning,
        keys=scope.keys,
    )
    c.duplicates_skipped = len(plan.duplicates)
    c.delete_planned = len(plan.to_delete)
    c.insert_planned = len(plan.to_insert)
    click.echo(
        f"[{ctx.run_id}] Plan ({profile.strategy}): {len(existing)} existing, "
        f"{len(plan.to_delete)} to delete, {len(plan.to_insert)} to insert, "
        f"{len(plan.duplicates)} duplicate(s) skipped"
    )

    outcome = MigrationOutcome(plan=plan)
    if ctx.dry_run:
        click.echo(f"[{ctx.run_id}] Dry run: no writes issued")
        return outcome

    policy = profile.to_batch_policy()

    # Deletes finish completely before the first insert chunk is sent.
    if plan.to_delete:
        deletes = delete_in_batches(
            store, plan.to_delete, policy, profile.delete_batch_size, sleep=sleep
        )
        outcome.deletes = deletes
        c.deleted = deletes.succeeded
        c.delete_failed = deletes.failed_count
        c.failed_batches += len(deletes.failed)
        c.batch_retries += deletes.retries
        click.echo(
            f"[{ctx.run_id}] Deleted {deletes.succeeded}/{len(plan.to_delete)} "
            f"in {deletes.chunks} chunk(s)"
        )
        if deletes.failed:
            c.warnings.append(
                f"{deletes.failed_count} existing voicing(s) could not be deleted; "
                "stale rows may remain"
            )

    steps = _insert_steps(plan.to_insert)
    if steps:
        inserts = write_batches(store, steps, policy, sleep=sleep)
        outcome.inserts = inserts
        c.inserted = inserts.succeeded
        c.insert_failed = inserts.failed_count
        c.failed_batches += len(inserts.failed)
        c.degraded_batches = inserts.degraded
        c.batch_retries += inserts.retries
        click.echo(
            f"[{ctx.run_id}] Inserted {inserts.succeeded}/{len(steps)} "
            f"in {inserts.chunks} chunk(s), {len(inserts.failed)} failed chunk(s)"
        )
        for fb in inserts.failed:
            c.warnings.append(f"insert chunk {fb.label} failed: {fb.reason}")

    if profile.strategy == FULL_REPLACE:
        expected, exact = len(plan.to_insert), True
    else:
        expected, exact = len(existing) + len(plan.to_insert), False
    if profile.settle_seconds > 0:
        click.echo(f"[{ctx.run_id}] Waiting {profile.settle_seconds:g}s before verification")
    result = verify(store, expected, scope, settle_seconds=profile.settle_seconds, exact=exact, sleep=sleep)
    outcome.verification = result

    c.verified_expected = result.expected
    c.verified_actual = result.actual
    c.verification_incomplete = result.actual is None
    c.verification_mismatch = result.actual is not None and not result.matches
    if c.verification_incomplete:
        c.warnings.append(f"verification incomplete: {result.error}")
    elif c.verification_mismatch:
        c.warnings.append(
            f"verification mismatch: expected {result.expected}, found {result.actual}"
        )
    return outcome


def run_export(
    ctx: MigrationContext,
    output_path: Path,
    parsed: Any = None,
    fetch: Callable[[str], Any] | None = None,
    rejects: RejectWriter | None = None,
) -> Path:
    """Transform and write the import file.  No store access."""
    records = _load_and_transform(ctx, parsed, fetch, rejects)
    path = write_import_file(records, output_path)
    click.echo(f"[{ctx.run_id}] Wrote {len(records)} voicing(s) to {path}")
    return path


# ---------------------------------------------------------------------------
# Store construction
# ---------------------------------------------------------------------------

def _open_store(ctx: MigrationContext, store_kind: str, db_dsn: str | None) -> ChordStore:
    if store_kind == "postgres":
        if not db_dsn:
            raise ConfigError("--db-dsn is required with --store postgres")
        return PgChordStore(psycopg.connect(db_dsn, autocommit=True))
    app_id, token = ctx.require_credentials()
    return InstantAdminStore(app_id, token, api_base=ctx.api_base)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.argument("filter_key", required=False, default=None)
@click.option(
    "--mode",
    default="migrate",
    type=click.Choice(["migrate", "export", "census"]),
    show_default=True,
    help="What to run",
)
@click.option("--profile", "profile_name", default=None, help="Migration profile name (default: the file's default_profile)")
@click.option("--profiles-path", default=None, type=click.Path(), help="Profiles YAML (default: the packaged chord_etl/config/migration_profiles.yml)")
@click.option("--strategy", default=None, type=click.Choice(list(VALID_STRATEGIES)), help="Override the profile's strategy")
@click.option("--batch-size", default=None, type=int, envvar="BATCH_SIZE", help="Override the profile's insert chunk size")
@click.option("--verify/--no-verify", "verify_chunks", default=None, help="Override per-chunk verification")
@click.option("--settle-seconds", default=None, type=float, help="Override the wait before the final count")
@click.option("--file-only", is_flag=True, default=False, help="Same as --mode export")
@click.option("--output-path", default="chords-import.json", show_default=True, type=click.Path())
@click.option("--source-url", default=DEFAULT_SOURCE_URL, envvar="CHORDS_SOURCE_URL", show_default=True)
@click.option("--store", "store_kind", default="instant", type=click.Choice(["instant", "postgres"]), show_default=True)
@click.option("--db-dsn", default=None, envvar="DB_DSN", help="[postgres] PostgreSQL DSN")
@click.option("--app-id", default=None, envvar=list(APP_ID_ENV), help="[instant] App id")
@click.option("--admin-token", default=None, envvar=list(ADMIN_TOKEN_ENV), help="[instant] Admin token")
@click.option("--api-base", default=DEFAULT_API_BASE, envvar="INSTANTDB_API_BASE", show_default=True)
@click.option("--env-file", default=".env", show_default=True, type=click.Path(), help="Fallback file for credentials")
@click.option("--dry-run", is_flag=True, default=False, help="Plan only; no deletes or inserts")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/chord_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False)
def main(
    filter_key: str | None,
    mode: str,
    profile_name: str | None,
    profiles_path: str | None,
    strategy: str | None,
    batch_size: int | None,
    verify_chunks: bool | None,
    settle_seconds: float | None,
    file_only: bool,
    output_path: str,
    source_url: str,
    store_kind: str,
    db_dsn: str | None,
    app_id: str | None,
    admin_token: str | None,
    api_base: str,
    env_file: str,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Chord-library migration CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    if file_only:
        mode = "export"

    try:
        profile = get_profile(
            profile_name, Path(profiles_path) if profiles_path else DEFAULT_PROFILES_PATH
        ).with_overrides(
            strategy=strategy,
            batch_size=batch_size,
            verify=verify_chunks,
            settle_seconds=settle_seconds,
        )
    except (ProfileValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    envs = Path(env_file)
    ctx = MigrationContext(
        run_id=run_id,
        profile=profile,
        app_id=app_id or resolve_env(APP_ID_ENV, envs),
        admin_token=admin_token or resolve_env(ADMIN_TOKEN_ENV, envs),
        api_base=api_base,
        source_url=source_url,
        filter_key=filter_key,
        dry_run=dry_run,
    )

    click.echo(
        f"[{run_id}] Starting {mode} run (profile={profile.name}, "
        f"strategy={profile.strategy}, batch_size={profile.batch_size}, "
        f"verify={profile.verify}, dry_run={dry_run})"
    )
    if filter_key:
        click.echo(f"[{run_id}] Filtering to chord group {filter_key!r}")

    rejects = RejectWriter(Path(rejects_path))
    store: ChordStore | None = None
    try:
        if mode == "export":
            run_export(ctx, Path(output_path), rejects=rejects)
            click.echo(f"[{run_id}] Import the file through the database dashboard.")
            return

        store = _open_store(ctx, store_kind, db_dsn)

        if mode == "census":
            census = library_census(store)
            click.echo(build_census_report(census))
            return

        outcome = run_migration(ctx, store, rejects=rejects)
    except (FetchError, ConfigError, StoreError, NothingToImportError, psycopg.Error) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        click.echo(traceback.format_exc(), err=True)
        sys.exit(1)
    finally:
        rejects.close()
        if store is not None:
            store.close()

    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} skipped position(s) written to {rejects_path}")

    click.echo(
        build_migration_report(
            ctx.counters,
            profile.name,
            profile.strategy,
            inserts=outcome.inserts,
            result=outcome.verification,
            dry_run=dry_run,
        )
    )
    report_path = write_run_report(
        ctx,
        mode,
        {
            "store": store_kind,
            "batch_size": profile.batch_size,
            "verify": profile.verify,
            "failed_insert_ids": outcome.inserts.failed_ids if outcome.inserts else [],
        },
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if ctx.counters.insert_failed or ctx.counters.verification_mismatch:
        click.echo(
            f"[{run_id}] Completed with discrepancies; re-running is safe.",
            err=True,
        )


if __name__ == "__main__":
    main()
