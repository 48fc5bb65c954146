"""Unit test fixtures.

FakeStore is an in-memory ChordStore: query() applies QueryFilter the way
the admin API does, transact() applies steps atomically.  Tests steer
failures through the on_transact hook.
"""

from __future__ import annotations

from typing import Any, Callable

import pytest

from chord_etl.store import QueryFilter, TxStep, WriteOutcome, WriteSuccess


_FIELD_MAP = {
    "library_type": "libraryType",
    "instrument": "instrument",
    "tuning": "tuning",
    "key": "key",
    "name": "name",
}


def _matches(row: dict[str, Any], filt: QueryFilter) -> bool:
    for attr, field_name in _FIELD_MAP.items():
        value = getattr(filt, attr)
        if value is not None and row.get(field_name) != value:
            return False
    if filt.keys is not None and row.get("key") not in filt.keys:
        return False
    if filt.ids is not None and row.get("id") not in filt.ids:
        return False
    if filt.name_like is not None and filt.name_like not in (row.get("name") or ""):
        return False
    return True


class FakeStore:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows: dict[str, dict[str, Any]] = {r["id"]: dict(r) for r in rows or []}
        self.transact_calls: list[list[TxStep]] = []
        self.query_calls: list[QueryFilter] = []
        self.on_transact: Callable[["FakeStore", int, list[TxStep]], WriteOutcome | None] | None = None
        self.query_error: Exception | None = None
        self.closed = False

    def apply(self, steps: list[TxStep]) -> None:
        for step in steps:
            if step.op == "delete":
                self.rows.pop(step.chord_id, None)
            else:
                self.rows[step.chord_id] = {"id": step.chord_id, **(step.data or {})}

    def query(self, filt: QueryFilter) -> list[dict[str, Any]]:
        self.query_calls.append(filt)
        if self.query_error is not None:
            raise self.query_error
        out = [dict(r) for r in self.rows.values() if _matches(r, filt)]
        return out[: filt.limit] if filt.limit is not None else out

    def transact(self, steps: list[TxStep]) -> WriteOutcome:
        call_index = len(self.transact_calls)
        self.transact_calls.append(list(steps))
        if self.on_transact is not None:
            outcome = self.on_transact(self, call_index, steps)
            if outcome is not None:
                return outcome
        self.apply(steps)
        return WriteSuccess(len(steps))

    def close(self) -> None:
        self.closed = True


def main_row(chord_id: str, name: str, key: str, suffix: str = "major", **overrides: Any) -> dict[str, Any]:
    row = {
        "id": chord_id,
        "name": name,
        "key": key,
        "suffix": suffix,
        "frets": [0, 0, 0, 3],
        "fingers": [],
        "baseFret": 1,
        "barres": [],
        "position": 1,
        "instrument": "ukulele",
        "tuning": "ukulele_standard",
        "libraryType": "main",
    }
    row.update(overrides)
    return row


@pytest.fixture()
def store():
    return FakeStore()


@pytest.fixture()
def make_store():
    return FakeStore


@pytest.fixture()
def make_row():
    return main_row


@pytest.fixture()
def no_sleep():
    """Sleep stand-in that records requested delays."""
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
