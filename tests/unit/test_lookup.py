"""Unit tests for chord_etl.lookup."""

from __future__ import annotations

import pytest

from chord_etl.lookup import (
    chord_matches_query,
    filter_chords,
    find_chord,
    frets_string,
    group_chords,
    is_common_chord,
    load_library,
    normalize_query,
    relative_frets_to_absolute,
    root_note_order,
    search_library,
    suffix_priority,
)
from chord_etl.shared import QueryTimeoutError


def _c(name: str, position: int = 1, **extra) -> dict:
    return {"name": name, "position": position, **extra}


# ---------------------------------------------------------------------------
# normalize_query
# ---------------------------------------------------------------------------

class TestNormalizeQuery:
    @pytest.mark.parametrize("query,expected", [
        ("A f", "Ab"),
        ("Af", "Ab"),
        ("a flat", "Ab"),
        ("A fl", "Ab"),
        ("A sharp", "A#"),
        ("Ash", "A#"),
        ("c sha", "C#"),
    ])
    def test_spelled_accidentals(self, query, expected):
        assert normalize_query(query) == expected

    def test_cs_left_alone_for_sus(self):
        assert normalize_query("Cs") == "Cs"

    def test_trims(self):
        assert normalize_query("  Am7 ") == "Am7"

    def test_empty(self):
        assert normalize_query("") == ""
        assert normalize_query(None) is None


# ---------------------------------------------------------------------------
# chord_matches_query
# ---------------------------------------------------------------------------

class TestChordMatchesQuery:
    def test_natural_root_excludes_accidentals(self):
        assert chord_matches_query("A7", "A")
        assert not chord_matches_query("Ab", "A")
        assert not chord_matches_query("A#m", "A")

    def test_flat_query_forms(self):
        assert chord_matches_query("Abm", "Af")
        assert chord_matches_query("Ab7", "A flat")

    def test_enharmonic_root(self):
        assert chord_matches_query("Gbm7", "F#m7")
        assert chord_matches_query("F#", "Gb")

    def test_suffix_prefix(self):
        assert chord_matches_query("Am7", "Am")
        assert chord_matches_query("Amaj7", "Am")
        assert not chord_matches_query("A7", "Am")

    def test_cs_matches_csus(self):
        assert chord_matches_query("Csus4", "Cs")

    def test_query_without_root_matches_suffix(self):
        assert chord_matches_query("Csus2", "sus")

    def test_empty_query_matches(self):
        assert chord_matches_query("C", "")

    def test_missing_name(self):
        assert not chord_matches_query(None, "C")

    def test_filter_chords(self):
        chords = [_c("C"), _c("Cm"), _c("Db"), _c("C#7")]
        assert [c["name"] for c in filter_chords(chords, "C#")] == ["Db", "C#7"]
        assert filter_chords(chords, "") == chords


# ---------------------------------------------------------------------------
# ordering
# ---------------------------------------------------------------------------

class TestOrdering:
    @pytest.mark.parametrize("name,priority", [
        ("C", 0),
        ("G7", 1),
        ("F6", 2),
        ("Cmaj7", 3),
        ("Am", 4),
        ("Am7", 5),
        ("Csus4", 6),
        ("Cadd9", 7),
        ("Bdim", 8),
        ("Eaug", 9),
        ("C9", 10),
        ("C11", 10),
    ])
    def test_suffix_priority(self, name, priority):
        assert suffix_priority(name) == priority

    def test_root_note_order(self):
        names = ["B", "Ab", "C#", "C", "Db", "Bb"]
        assert sorted(names, key=root_note_order) == ["C", "C#", "Db", "Ab", "Bb", "B"]
        assert root_note_order("H7") == 99

    @pytest.mark.parametrize("chord,expected", [
        (_c("C"), True),
        (_c("Am"), True),
        (_c("Bbmin"), True),
        (_c("G7"), True),
        (_c("Am7"), False),
        (_c("Cmaj7"), False),
        (_c("C", position=2), False),
        (_c("Xm"), False),
    ])
    def test_is_common_chord(self, chord, expected):
        assert is_common_chord(chord) is expected


# ---------------------------------------------------------------------------
# grouping
# ---------------------------------------------------------------------------

class TestGroupChords:
    def test_browse_groups_common_by_root(self):
        chords = [_c("G7"), _c("Am"), _c("G"), _c("C"), _c("C", position=2), _c("Csus4"), _c("Cm")]
        groups = group_chords(chords)
        assert [g.name for g in groups] == ["C", "G", "A"]
        assert [c["name"] for c in groups[0].chords] == ["C", "Cm"]
        assert [c["name"] for c in groups[1].chords] == ["G", "G7"]

    def test_search_groups_by_name_exact_first(self):
        chords = [_c("Cm", 2), _c("Cm7"), _c("Cm"), _c("Cmaj7"), _c("Dm")]
        groups = group_chords(chords, "cm")
        assert [g.name for g in groups] == ["Cm", "Cmaj7", "Cm7"]
        assert [c["position"] for c in groups[0].chords] == [1, 2]


# ---------------------------------------------------------------------------
# find_chord
# ---------------------------------------------------------------------------

class TestFindChord:
    CHORDS = [
        _c("C", 1, id="c1", instrument="ukulele", tuning="ukulele_standard"),
        _c("C", 2, id="c2", instrument="ukulele", tuning="ukulele_standard"),
        _c("Am", 1, id="a1", instrument="ukulele", tuning="ukulele_standard"),
        _c("C", 1, id="g1", instrument="guitar", tuning="standard"),
    ]

    def test_exact(self):
        assert find_chord(self.CHORDS, "C", 2)["id"] == "c2"

    def test_falls_back_to_position_one(self):
        assert find_chord(self.CHORDS, "Am", 3)["id"] == "a1"

    def test_case_insensitive(self):
        assert find_chord(self.CHORDS, "am")["id"] == "a1"

    def test_instrument_scoped(self):
        assert find_chord(self.CHORDS, "C", instrument="guitar", tuning="standard")["id"] == "g1"

    def test_missing(self):
        assert find_chord(self.CHORDS, "Zz") is None
        assert find_chord(self.CHORDS, "") is None


# ---------------------------------------------------------------------------
# frets
# ---------------------------------------------------------------------------

class TestFrets:
    def test_relative_to_absolute(self):
        assert relative_frets_to_absolute([1, 1, 0, None], 5) == [5, 5, 0, "x"]

    def test_base_fret_one_is_identity(self):
        assert relative_frets_to_absolute([0, 0, 0, 3], 1) == [0, 0, 0, 3]

    def test_frets_string(self):
        assert frets_string({"frets": [1, 1, 1, 1], "baseFret": 5}) == "5555"
        assert frets_string({"frets": [0, 0, 0, 3], "baseFret": 1}) == "0003"

    def test_frets_string_from_json_text(self):
        assert frets_string({"frets": "[0,2,3,2]"}) == "0232"

    def test_frets_string_from_plain_text(self):
        assert frets_string({"frets": " X232 "}) == "x232"

    def test_frets_string_missing(self):
        assert frets_string({}) is None
        assert frets_string(None) is None


# ---------------------------------------------------------------------------
# store-backed reads
# ---------------------------------------------------------------------------

class TestLoadLibrary:
    def test_loads_partition(self, make_store, make_row):
        store = make_store([make_row("a", "C", "C"), make_row("p", "C", "C", libraryType="personal")])
        view = load_library(store)
        assert [c["id"] for c in view.chords] == ["a"]
        assert view.incomplete is False

    def test_timeout_marks_incomplete(self, store):
        store.query_error = QueryTimeoutError("operation-timed-out")
        view = load_library(store)
        assert view.incomplete is True
        assert view.chords == []
        assert "timed-out" in view.error

    def test_search_library(self, make_store, make_row):
        store = make_store([
            make_row("a", "C", "C"),
            make_row("b", "C7", "C", "7"),
            make_row("c", "Cm", "C", "m"),
        ])
        groups, view = search_library(store, "C")
        assert [g.name for g in groups] == ["C", "C7"]
        assert not view.incomplete
