"""chord_etl.lookup

Read-side chord lookup helpers shared with the UI.

Everything here works on store records (camelCase dicts with at least
"name" and "position").  Matching and ordering rules:

  normalize_query     "A f" / "Af" / "A flat" -> "Ab";  "A sharp" / "Ash" -> "A#"
  chord_matches_query root+accidental aware prefix match, enharmonic roots
                      equal ("F#m7" matches "Gbm7"), "A" does not match "Ab"
  suffix_priority     major < 7 < 6 < maj7 < minor < m7 < sus < add < dim < aug < other
  root_note_order     C, C#, Db, D, D#, Eb, E, F, F#, Gb, G, G#, Ab, A, A#, Bb, B

load_library() reports a timed-out read as LibraryView(incomplete=True)
so callers can show "data incomplete" instead of "nothing found".
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from chord_etl.normalize import (
    extract_root_note,
    is_minor_chord,
    matches_query,
    roots_are_equivalent,
    split_root,
)
from chord_etl.shared import (
    DEFAULT_INSTRUMENT,
    DEFAULT_TUNING,
    MAIN_LIBRARY,
    QueryTimeoutError,
)
from chord_etl.store import ChordStore, QueryFilter

_FLAT_FULL_RE = re.compile(r"^([A-Ga-g][#b]?)\s*(flat|fla|fl)$", re.IGNORECASE)
_FLAT_SINGLE_RE = re.compile(r"^([A-Ga-g][#b]?)\s*f$", re.IGNORECASE)
_SHARP_RE = re.compile(r"^([A-Ga-g][#b]?)\s*(sharp|shar|sha|sh)$", re.IGNORECASE)
_QUERY_RE = re.compile(r"^([A-Ga-g][#b]?)(.*)$")
_STANDALONE_7_RE = re.compile(r"^7(\s|$)")
_STANDALONE_6_RE = re.compile(r"^6(\s|$)")
_MINOR_WORD_RE = re.compile(r"^(m|min|minor)(\s|$)")

ROOT_NOTE_ORDER = {
    "C": 0, "C#": 1, "Db": 2, "D": 3, "D#": 4, "Eb": 5, "E": 6, "F": 7,
    "F#": 8, "Gb": 9, "G": 10, "G#": 11, "Ab": 12, "A": 13, "A#": 14,
    "Bb": 15, "B": 16,
}
UNKNOWN_ORDER = 99


# ---------------------------------------------------------------------------
# Query parsing + matching
# ---------------------------------------------------------------------------

def normalize_query(query: str | None) -> str | None:
    """Rewrite spelled-out accidentals; anything else is returned trimmed.

    Sharp needs at least "sh" so that "Cs" still matches "Csus4".
    """
    if not query:
        return query
    trimmed = query.strip()
    m = _FLAT_FULL_RE.match(trimmed) or _FLAT_SINGLE_RE.match(trimmed)
    if m:
        return m.group(1).upper() + "b"
    m = _SHARP_RE.match(trimmed)
    if m:
        return m.group(1).upper() + "#"
    return trimmed


def parse_chord_query(normalized: str | None) -> tuple[str, str]:
    """Split a normalised query into (root, suffix prefix)."""
    if not normalized:
        return "", ""
    trimmed = normalized.strip()
    m = _QUERY_RE.match(trimmed)
    if not m:
        return "", trimmed
    return m.group(1), (m.group(2) or "").strip()


def chord_matches_query(chord_name: str | None, query: str | None) -> bool:
    if not query:
        return True
    if not chord_name:
        return False

    root, suffix_prefix = parse_chord_query(normalize_query(query))
    chord_root, chord_suffix = split_root(chord_name)

    if not root:
        return chord_suffix.lower().startswith(suffix_prefix.lower())
    if chord_root.lower() != root.lower() and not roots_are_equivalent(chord_root, root):
        return False
    return chord_suffix.lower().startswith(suffix_prefix.lower())


def filter_chords(chords: Iterable[dict[str, Any]], query: str | None) -> list[dict[str, Any]]:
    chords = list(chords)
    if not query:
        return chords
    return [c for c in chords if chord_matches_query(c.get("name"), query)]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def _suffix_of(chord_name: str) -> str:
    root = extract_root_note(chord_name)
    return chord_name.lower()[len(root):]


def suffix_priority(chord_name: str) -> int:
    """Lower is more common."""
    name = chord_name.lower()
    suffix = _suffix_of(chord_name)
    if not suffix.strip():
        return 0
    if _STANDALONE_7_RE.match(suffix):
        return 1
    if _STANDALONE_6_RE.match(suffix):
        return 2
    if "maj7" in name:
        return 3
    if is_minor_chord(chord_name) and "m7" not in name and "m6" not in name:
        return 4
    if "m7" in name:
        return 5
    if "sus" in name:
        return 6
    if "add" in name:
        return 7
    if "dim" in name:
        return 8
    if "aug" in name:
        return 9
    return 10


def root_note_order(chord_name: str) -> int:
    return ROOT_NOTE_ORDER.get(extract_root_note(chord_name), UNKNOWN_ORDER)


def is_common_chord(chord: dict[str, Any]) -> bool:
    """Position 1, a known root, and a major, minor or dominant-7th suffix."""
    if chord.get("position") != 1:
        return False
    name = chord.get("name") or ""
    root = extract_root_note(name)
    if root not in ROOT_NOTE_ORDER:
        return False
    suffix = name.lower()[len(root):].strip()
    if not suffix:
        return True
    if _MINOR_WORD_RE.match(suffix):
        return True
    return bool(_STANDALONE_7_RE.match(suffix))


@dataclass
class ChordGroup:
    name: str
    chords: list[dict[str, Any]] = field(default_factory=list)


def sort_chord_groups(groups: list[ChordGroup], query: str = "") -> list[ChordGroup]:
    """Exact name match first, then root order, suffix priority, name."""
    q = query.strip().lower()

    def _key(group: ChordGroup) -> tuple:
        exact = bool(q) and group.name.lower() == q
        return (
            0 if exact else 1,
            root_note_order(group.name),
            suffix_priority(group.name),
            group.name,
        )

    return sorted(groups, key=_key)


def group_chords(chords: Iterable[dict[str, Any]], query: str = "") -> list[ChordGroup]:
    """Browse view (empty query): common chords by root note.
    Search view: chords matching the query by name (a bare root skips its
    minors), grouped by name with positions ascending.
    """
    chords = list(chords)
    if not query.strip():
        by_root: dict[str, list[dict[str, Any]]] = {}
        for chord in chords:
            if not is_common_chord(chord):
                continue
            root = extract_root_note(chord.get("name"))
            by_root.setdefault(root, []).append(chord)
        groups = [
            ChordGroup(
                root,
                sorted(members, key=lambda c: (suffix_priority(c["name"]), c["name"])),
            )
            for root, members in by_root.items()
        ]
        return sorted(groups, key=lambda g: root_note_order(g.name))

    by_name: dict[str, list[dict[str, Any]]] = {}
    for chord in chords:
        name = chord.get("name")
        if name and matches_query(name, query):
            by_name.setdefault(name, []).append(chord)
    groups = [
        ChordGroup(name, sorted(members, key=lambda c: c.get("position") or 1))
        for name, members in by_name.items()
    ]
    return sort_chord_groups(groups, query)


# ---------------------------------------------------------------------------
# Single-chord lookup
# ---------------------------------------------------------------------------

def find_chord(
    chords: Iterable[dict[str, Any]],
    chord_name: str | None,
    position: int = 1,
    instrument: str = DEFAULT_INSTRUMENT,
    tuning: str = DEFAULT_TUNING,
) -> dict[str, Any] | None:
    """Exact (name, position), then position 1, then a case-insensitive name."""
    if not chord_name:
        return None
    candidates = [
        c for c in chords
        if c.get("instrument", instrument) == instrument
        and c.get("tuning", tuning) == tuning
    ]

    for c in candidates:
        if c.get("name") == chord_name and (c.get("position") or 1) == position:
            return c
    if position != 1:
        for c in candidates:
            if c.get("name") == chord_name and (c.get("position") or 1) == 1:
                return c
    lowered = chord_name.lower()
    for c in candidates:
        if (c.get("name") or "").lower() == lowered:
            return c
    return None


def relative_frets_to_absolute(frets: list[Any], base_fret: int | None) -> list[Any]:
    """absolute = baseFret + relative - 1; open (0) stays 0, missing -> "x"."""
    if not frets or base_fret is None or base_fret <= 0:
        return frets
    out: list[Any] = []
    for f in frets:
        if f is None:
            out.append("x")
        elif f == 0:
            out.append(0)
        else:
            try:
                out.append(base_fret + int(f) - 1)
            except (TypeError, ValueError):
                out.append("x")
    return out


def frets_string(chord: dict[str, Any] | None) -> str | None:
    """Comparable absolute fret string, e.g. [1,1,1,1] at baseFret 5 -> "5555"."""
    if not chord:
        return None
    frets = chord.get("frets")
    if frets is None:
        return None
    if isinstance(frets, str) and frets.startswith("["):
        try:
            frets = json.loads(frets)
        except ValueError:
            return frets.strip().lower()
    if isinstance(frets, dict):
        frets = list(frets.values())
    if isinstance(frets, list) and frets:
        shown = relative_frets_to_absolute(frets, chord.get("baseFret"))
        return "".join("x" if f is None or f == "x" else str(f) for f in shown).lower()
    if isinstance(frets, str) and frets:
        return frets.strip().lower()
    return None


# ---------------------------------------------------------------------------
# Store-backed reads
# ---------------------------------------------------------------------------

@dataclass
class LibraryView:
    chords: list[dict[str, Any]] = field(default_factory=list)
    incomplete: bool = False
    error: str | None = None


def load_library(
    store: ChordStore,
    instrument: str = DEFAULT_INSTRUMENT,
    tuning: str = DEFAULT_TUNING,
    library_type: str = MAIN_LIBRARY,
) -> LibraryView:
    try:
        rows = store.query(QueryFilter.partition(library_type, instrument, tuning))
    except QueryTimeoutError as exc:
        return LibraryView([], incomplete=True, error=str(exc))
    return LibraryView(rows)


def search_library(
    store: ChordStore,
    query: str,
    instrument: str = DEFAULT_INSTRUMENT,
    tuning: str = DEFAULT_TUNING,
    limit: int = 20,
) -> tuple[list[ChordGroup], LibraryView]:
    """Grouped search results (at most limit groups) plus the underlying view."""
    view = load_library(store, instrument, tuning)
    return group_chords(view.chords, query)[:limit], view
