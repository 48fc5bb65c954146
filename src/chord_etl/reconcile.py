"""chord_etl.reconcile

Decide what to delete and what to insert before any write happens.

Strategies:
  full_replace  Delete every existing main voicing in the target
                instrument + tuning partition (narrowed to the incoming keys
                when the run is filtered), then insert everything once.
                An incoming voicing repeating an earlier one ("" and "major"
                suffixes are the same) is skipped.
  incremental   Delete nothing.  Skip an incoming voicing when an existing
                main voicing in the same chord group (same name, or same key
                and equivalent suffix) has identical frets, baseFret and
                position.  Voicings repeated within the incoming set are
                skipped after their first occurrence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from chord_etl.normalize import normalize_suffix
from chord_etl.profiles import FULL_REPLACE, INCREMENTAL
from chord_etl.shared import MAIN_LIBRARY
from chord_etl.transform import ChordVoicing


@dataclass
class ReconcilePlan:
    to_delete: list[str] = field(default_factory=list)
    to_insert: list[ChordVoicing] = field(default_factory=list)
    duplicates: list[ChordVoicing] = field(default_factory=list)


def _in_partition(record: ChordVoicing, instrument: str, tuning: str) -> bool:
    return (
        record.library_type == MAIN_LIBRARY
        and record.instrument == instrument
        and record.tuning == tuning
    )


# ---------------------------------------------------------------------------
# Full replace
# ---------------------------------------------------------------------------

def reconcile_full_replace(
    existing: Iterable[ChordVoicing],
    incoming: list[ChordVoicing],
    instrument: str,
    tuning: str,
    keys: Iterable[str] | None = None,
) -> ReconcilePlan:
    key_scope = set(keys) if keys is not None else None
    to_delete = []
    for record in existing:
        if not record.id or not _in_partition(record, instrument, tuning):
            continue
        if key_scope is not None and record.key not in key_scope:
            continue
        to_delete.append(record.id)
    plan = ReconcilePlan(to_delete=to_delete)
    seen: set[tuple] = set()
    for candidate in incoming:
        key = _dedup_key(candidate)
        if key in seen:
            plan.duplicates.append(candidate)
            continue
        seen.add(key)
        plan.to_insert.append(candidate)
    return plan


# ---------------------------------------------------------------------------
# Incremental
# ---------------------------------------------------------------------------

def same_group(a: ChordVoicing, b: ChordVoicing) -> bool:
    if a.name == b.name:
        return True
    return a.key == b.key and normalize_suffix(a.suffix) == normalize_suffix(b.suffix)


def is_duplicate(candidate: ChordVoicing, existing: ChordVoicing) -> bool:
    """Same partition and chord group, identical frets, baseFret and position."""
    return (
        existing.library_type == MAIN_LIBRARY
        and existing.instrument == candidate.instrument
        and existing.tuning == candidate.tuning
        and same_group(candidate, existing)
        and list(existing.frets) == list(candidate.frets)
        and existing.base_fret == candidate.base_fret
        and existing.position == candidate.position
    )


def _dedup_key(record: ChordVoicing) -> tuple:
    return (
        record.key,
        normalize_suffix(record.suffix),
        tuple(record.frets),
        record.base_fret,
        record.position,
        record.instrument,
        record.tuning,
    )


def reconcile_incremental(
    existing: Iterable[ChordVoicing],
    incoming: list[ChordVoicing],
) -> ReconcilePlan:
    by_name: dict[str, list[ChordVoicing]] = {}
    by_group: dict[tuple[str, str], list[ChordVoicing]] = {}
    for record in existing:
        by_name.setdefault(record.name, []).append(record)
        by_group.setdefault(record.group_key, []).append(record)

    plan = ReconcilePlan()
    seen: set[tuple] = set()
    for candidate in incoming:
        pool = by_name.get(candidate.name, []) + by_group.get(candidate.group_key, [])
        key = _dedup_key(candidate)
        if key in seen or any(is_duplicate(candidate, e) for e in pool):
            plan.duplicates.append(candidate)
            continue
        seen.add(key)
        plan.to_insert.append(candidate)
    return plan


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def reconcile(
    strategy: str,
    existing: Iterable[ChordVoicing],
    incoming: list[ChordVoicing],
    instrument: str,
    tuning: str,
    keys: Iterable[str] | None = None,
) -> ReconcilePlan:
    if strategy == FULL_REPLACE:
        return reconcile_full_replace(existing, incoming, instrument, tuning, keys=keys)
    if strategy == INCREMENTAL:
        return reconcile_incremental(existing, incoming)
    raise ValueError(f"unknown reconcile strategy {strategy!r}")
