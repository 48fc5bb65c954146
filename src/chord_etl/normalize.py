"""Normalization functions for chord names.

Shared by the migration pipeline and the read-side lookup code so that both
agree on chord identity.  All functions accept str | None.
"""

from __future__ import annotations

import re

MAJOR_SUFFIXES = frozenset({"", "major"})

_ROOT_RE = re.compile(r"^([A-Ga-g][#b]?)")
_MINOR_AFTER_ROOT_RE = re.compile(r"^[a-g][#b]?m")
_BARE_ROOT_RE = re.compile(r"^[a-g][#b]?\s*$", re.IGNORECASE)

SHARP_TO_FLAT = {
    "C#": "Db",
    "D#": "Eb",
    "F#": "Gb",
    "G#": "Ab",
    "A#": "Bb",
}

FLAT_TO_SHARP = {flat: sharp for sharp, flat in SHARP_TO_FLAT.items()}


# ---------------------------------------------------------------------------
# Rule 1: format_chord_name  (display name stored on every voicing)
# ---------------------------------------------------------------------------

def format_chord_name(key: str, suffix: str | None) -> str:
    """Return key alone for major chords, else key + suffix with no separator.

    Case is left untouched: ("C", "m7") -> "Cm7", ("C", "major") -> "C".
    """
    if suffix is None or suffix in MAJOR_SUFFIXES:
        return key
    return key + suffix


# ---------------------------------------------------------------------------
# Rule 2: normalize_suffix  (comparison form only, never for display)
# ---------------------------------------------------------------------------

def normalize_suffix(suffix: str | None) -> str:
    """Map "major", "" and None to the canonical empty suffix."""
    if suffix is None or suffix in MAJOR_SUFFIXES:
        return ""
    return suffix


def suffixes_equivalent(a: str | None, b: str | None) -> bool:
    return normalize_suffix(a) == normalize_suffix(b)


# ---------------------------------------------------------------------------
# Rule 3: extract_root_note
# ---------------------------------------------------------------------------

def extract_root_note(chord_name: str | None) -> str:
    """Return the root note (e.g. "C", "C#", "Db") or "" when there is none.

    The letter is upper-cased; the accidental keeps its original case.
    """
    if not chord_name:
        return ""
    m = _ROOT_RE.match(chord_name)
    if not m:
        return ""
    root = m.group(1)
    return root[0].upper() + root[1:]


def split_root(chord_name: str | None) -> tuple[str, str]:
    """Split a chord name into (root, suffix) using the raw root spelling.

    Only the second character decides the root length, so "Ab7" -> ("Ab", "7")
    and "Am" -> ("A", "m").
    """
    if not chord_name:
        return "", ""
    length = 2 if len(chord_name) > 1 and chord_name[1] in ("#", "b") else 1
    return chord_name[:length], chord_name[length:]


# ---------------------------------------------------------------------------
# Rule 4: minor detection + query matching
# ---------------------------------------------------------------------------

def is_minor_chord(chord_name: str | None) -> bool:
    """True for "Cm", "Am7", "Cmin"; False for "Cmaj7" and majors."""
    if not chord_name:
        return False
    name = chord_name.lower()
    if "maj" in name:
        return False
    if "min" in name:
        return True
    return bool(_MINOR_AFTER_ROOT_RE.match(name))


def query_wants_minor(query: str) -> bool:
    q = query.strip().lower()
    return bool(_MINOR_AFTER_ROOT_RE.match(q)) or "min" in q


def matches_query(chord_name: str | None, query: str | None) -> bool:
    """Case-insensitive prefix match on the display name.

    A bare root query ("C") does not match minor chords of that root ("Cm")
    unless the query itself asks for minor.
    """
    if not chord_name or query is None:
        return False
    normalized_query = query.strip().lower()
    if not normalized_query:
        return True

    if _BARE_ROOT_RE.match(normalized_query) and not query_wants_minor(normalized_query):
        chord_root = extract_root_note(chord_name).lower()
        query_root = extract_root_note(query.strip()).lower()
        if chord_root == query_root and is_minor_chord(chord_name):
            return False

    return chord_name.lower().startswith(normalized_query)


# ---------------------------------------------------------------------------
# Rule 5: enharmonic spelling
# ---------------------------------------------------------------------------

def to_db_name(chord_name: str | None) -> str | None:
    """Sharp-rooted name -> flat spelling used by the library ("F#m7" -> "Gbm7")."""
    if not chord_name:
        return chord_name
    root, suffix = split_root(chord_name)
    flat = SHARP_TO_FLAT.get(root)
    return flat + suffix if flat else chord_name


def to_display_sharp(chord_name: str | None) -> str | None:
    """Flat-rooted name -> sharp spelling ("Gbm7" -> "F#m7")."""
    if not chord_name:
        return chord_name
    root, suffix = split_root(chord_name)
    sharp = FLAT_TO_SHARP.get(root)
    return sharp + suffix if sharp else chord_name


def is_sharp_root(chord_name: str | None) -> bool:
    if not chord_name or len(chord_name) < 2:
        return False
    return split_root(chord_name)[0] in SHARP_TO_FLAT


def _normalize_root(root: str) -> str:
    r = root.strip()
    if not r:
        return r
    return r[0].upper() + r[1:]


def roots_are_equivalent(root1: str | None, root2: str | None) -> bool:
    """True when both roots name the same pitch ("F#" and "Gb")."""
    if not root1 or not root2:
        return root1 == root2
    r1 = _normalize_root(root1)
    r2 = _normalize_root(root2)
    if r1 == r2:
        return True
    return SHARP_TO_FLAT.get(r1) == r2 or FLAT_TO_SHARP.get(r1) == r2
