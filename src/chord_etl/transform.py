"""chord_etl.transform

Flatten the nested chords-db document into one ChordVoicing per
(key, suffix, position).

Input shape (optionally nested under a top-level "chords" key):

    {"C": [{"key": "C", "suffix": "major",
            "positions": [{"frets": [0, 0, 0, 3], "fingers": [0, 0, 0, 3],
                           "baseFret": 1, "barres": []}, ...]}, ...], ...}

Rules:
  - filter_key, when given, keeps only the group with exactly that key.
  - A position is skipped (and counted) unless frets is a list whose length
    equals the instrument's string count.
  - position = source index + 1; suffix defaults to "major"; baseFret to 1;
    fingers / barres to [].
  - Source order is preserved.  Prioritisation is a separate step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from chord_etl.normalize import format_chord_name, normalize_suffix
from chord_etl.shared import (
    DEFAULT_INSTRUMENT,
    DEFAULT_TUNING,
    MAIN_LIBRARY,
    RejectWriter,
)

STRING_COUNTS = {"ukulele": 4, "guitar": 6}

# Imported first when a run is not filtered, so an interrupted run still
# leaves the everyday chords in place.
COMMON_CHORD_PREFIXES = (
    "C", "G", "F", "A", "D", "E",
    "Am", "Em", "Dm", "Bm", "Gm", "Fm",
)


def string_count(instrument: str) -> int:
    return STRING_COUNTS.get(instrument, 4)


# ---------------------------------------------------------------------------
# ChordVoicing
# ---------------------------------------------------------------------------

@dataclass
class ChordVoicing:
    name: str
    key: str
    suffix: str
    frets: list[int]
    position: int
    fingers: list[int] = field(default_factory=list)
    base_fret: int = 1
    barres: list[int] = field(default_factory=list)
    instrument: str = DEFAULT_INSTRUMENT
    tuning: str = DEFAULT_TUNING
    library_type: str = MAIN_LIBRARY
    id: str | None = None

    @property
    def business_key(self) -> tuple:
        return (
            self.name,
            tuple(self.frets),
            self.base_fret,
            self.position,
            self.instrument,
            self.tuning,
            self.library_type,
        )

    @property
    def group_key(self) -> tuple[str, str]:
        """(key, canonical suffix): "major" and "" land in the same group."""
        return self.key, normalize_suffix(self.suffix)

    def to_record(self) -> dict[str, Any]:
        """Store representation (camelCase, no id)."""
        return {
            "name": self.name,
            "key": self.key,
            "suffix": self.suffix,
            "frets": list(self.frets),
            "fingers": list(self.fingers),
            "baseFret": self.base_fret,
            "barres": list(self.barres),
            "position": self.position,
            "instrument": self.instrument,
            "tuning": self.tuning,
            "libraryType": self.library_type,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ChordVoicing":
        key = record.get("key") or ""
        suffix = record.get("suffix") or "major"
        base_fret = record.get("baseFret")
        return cls(
            name=record.get("name") or format_chord_name(key, suffix),
            key=key,
            suffix=suffix,
            frets=list(record.get("frets") or []),
            position=int(record.get("position") or 1),
            fingers=list(record.get("fingers") or []),
            base_fret=int(base_fret) if base_fret is not None else 1,
            barres=list(record.get("barres") or []),
            instrument=record.get("instrument") or DEFAULT_INSTRUMENT,
            tuning=record.get("tuning") or DEFAULT_TUNING,
            library_type=record.get("libraryType") or MAIN_LIBRARY,
            id=record.get("id"),
        )


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

@dataclass
class TransformResult:
    records: list[ChordVoicing] = field(default_factory=list)
    groups_read: int = 0
    variations_read: int = 0
    positions_read: int = 0
    skipped: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def _skip(self, reason: str) -> None:
        self.skipped += 1
        bucket = reason.split(":", 1)[0]
        self.skip_reasons[bucket] = self.skip_reasons.get(bucket, 0) + 1


def chord_groups(parsed: Any) -> dict[str, Any]:
    """Return the {group_key: [variation, ...]} mapping from either shape."""
    if not isinstance(parsed, dict):
        return {}
    nested = parsed.get("chords")
    if isinstance(nested, dict):
        return nested
    return parsed


def _position_reject_reason(position: Any, required: int) -> str | None:
    if not isinstance(position, dict) or position.get("frets") is None:
        return "missing_frets"
    frets = position["frets"]
    if not isinstance(frets, list):
        return "frets_not_sequence"
    if len(frets) != required:
        return f"frets_length:{len(frets)}"
    return None


def transform(
    parsed: Any,
    filter_key: str | None = None,
    instrument: str = DEFAULT_INSTRUMENT,
    tuning: str = DEFAULT_TUNING,
    rejects: RejectWriter | None = None,
) -> TransformResult:
    """Flatten a chords-db document into ChordVoicing records."""
    result = TransformResult()
    required = string_count(instrument)

    for group_key, variations in chord_groups(parsed).items():
        if filter_key and group_key != filter_key:
            continue
        if not isinstance(variations, list):
            continue
        result.groups_read += 1

        for variation in variations:
            if not isinstance(variation, dict):
                continue
            result.variations_read += 1
            key = variation.get("key") or group_key
            raw_suffix = variation.get("suffix")
            positions = variation.get("positions")
            if not isinstance(positions, list) or not positions:
                continue

            for index, position in enumerate(positions):
                result.positions_read += 1
                reason = _position_reject_reason(position, required)
                if reason:
                    result._skip(reason)
                    if rejects is not None:
                        rejects.write(
                            {
                                "group": group_key,
                                "key": key,
                                "suffix": raw_suffix,
                                "position": index + 1,
                                "frets": position.get("frets") if isinstance(position, dict) else position,
                            },
                            reason,
                        )
                    continue

                base_fret = position.get("baseFret")
                result.records.append(
                    ChordVoicing(
                        name=format_chord_name(key, raw_suffix or ""),
                        key=key,
                        suffix=raw_suffix or "major",
                        frets=list(position["frets"]),
                        position=index + 1,
                        fingers=list(position.get("fingers") or []),
                        base_fret=base_fret if base_fret is not None else 1,
                        barres=list(position.get("barres") or []),
                        instrument=instrument,
                        tuning=tuning,
                    )
                )

    return result


# ---------------------------------------------------------------------------
# Prioritisation
# ---------------------------------------------------------------------------

def is_common_prefix(name: str, prefixes: Iterable[str] = COMMON_CHORD_PREFIXES) -> bool:
    return any(name.startswith(p) for p in prefixes)


def prioritize_common(
    records: list[ChordVoicing],
    prefixes: Iterable[str] = COMMON_CHORD_PREFIXES,
) -> tuple[list[ChordVoicing], int]:
    """Stable partition: common-prefix chords first.  Returns (records, n_common)."""
    prefixes = tuple(prefixes)
    common = [r for r in records if is_common_prefix(r.name, prefixes)]
    other = [r for r in records if not is_common_prefix(r.name, prefixes)]
    return common + other, len(common)
