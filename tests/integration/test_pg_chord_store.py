"""Integration tests for PgChordStore and the migration pipeline on PostgreSQL.

These tests run against an ephemeral PostgreSQL database with the chord
schema applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from chord_etl.lookup import load_library, search_library
from chord_etl.migrate import main, run_migration
from chord_etl.profiles import FULL_REPLACE, INCREMENTAL, MigrationProfile
from chord_etl.shared import MigrationContext
from chord_etl.store import PgChordStore, QueryFilter, TxStep, WriteFailure, WriteSuccess
from chord_etl.verify import library_census

SCENARIO = {
    "C": [
        {"key": "C", "suffix": "", "positions": [{"frets": [0, 0, 0, 3]}]},
        {"key": "C", "suffix": "m", "positions": [
            {"frets": [0, 3, 3, 3]},
            {"frets": [5, 5, 4, 3]},
        ]},
    ]
}

PARTITION = QueryFilter.partition("main", "ukulele", "ukulele_standard")


def _record(name: str, key: str, suffix: str = "major", **overrides) -> dict:
    record = {
        "name": name,
        "key": key,
        "suffix": suffix,
        "frets": [0, 0, 0, 3],
        "fingers": [0, 0, 0, 3],
        "baseFret": 1,
        "barres": [],
        "position": 1,
        "instrument": "ukulele",
        "tuning": "ukulele_standard",
        "libraryType": "main",
    }
    record.update(overrides)
    return record


def _ctx(strategy: str = FULL_REPLACE, **overrides) -> MigrationContext:
    profile = MigrationProfile(
        name="pg-test",
        strategy=strategy,
        batch_size=2,
        delete_batch_size=2,
        verify=True,
        retry_delay_seconds=0.0,
        inter_chunk_delay_seconds=0.0,
        settle_seconds=0.0,
        verify_delay_seconds=0.0,
    )
    return MigrationContext(run_id="pg-run", profile=profile, **overrides)


def _count(conn, where: str = "TRUE") -> int:
    return conn.execute(f"SELECT count(*) FROM chord WHERE {where}").fetchone()[0]


# ---------------------------------------------------------------------------
# PgChordStore
# ---------------------------------------------------------------------------

class TestPgChordStore:
    def test_upsert_and_query_round_trip(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        outcome = store.transact([TxStep.upsert("c1", _record("C", "C"))])

        assert outcome == WriteSuccess(1)
        rows = store.query(PARTITION)
        assert rows == [{"id": "c1", **_record("C", "C")}]

    def test_upsert_same_id_updates(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        store.transact([TxStep.upsert("c1", _record("C", "C"))])
        store.transact([TxStep.upsert("c1", _record("C", "C", frets=[5, 4, 3, 3]))])

        assert _count(conn) == 1
        assert store.query(QueryFilter(ids=("c1",)))[0]["frets"] == [5, 4, 3, 3]

    def test_failing_step_rolls_back_whole_chunk(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        outcome = store.transact([
            TxStep.upsert("ok", _record("C", "C")),
            TxStep.upsert("bad", _record("G", "G", baseFret=0)),
        ])

        assert isinstance(outcome, WriteFailure)
        assert outcome.raised is True
        assert _count(conn) == 0

    def test_filters(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        store.transact([
            TxStep.upsert("c", _record("C", "C")),
            TxStep.upsert("csus", _record("Csus4", "C", "sus4")),
            TxStep.upsert("g", _record("G", "G")),
            TxStep.upsert("p", _record("C", "C", libraryType="personal")),
            TxStep.upsert("gtr", _record("C", "C", instrument="guitar", tuning="standard",
                                         frets=[0, 3, 2, 0, 1, 0])),
        ])

        assert {r["id"] for r in store.query(PARTITION)} == {"c", "csus", "g"}
        assert {r["id"] for r in store.query(QueryFilter(keys=("G",)))} == {"g"}
        assert {r["id"] for r in store.query(QueryFilter(name_like="sus"))} == {"csus"}
        assert len(store.query(QueryFilter(limit=2))) == 2

    def test_delete(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        store.transact([TxStep.upsert("c", _record("C", "C"))])
        assert store.transact([TxStep.delete("c"), TxStep.delete("missing")]) == WriteSuccess(2)
        assert _count(conn) == 0


# ---------------------------------------------------------------------------
# Migration pipeline
# ---------------------------------------------------------------------------

class TestMigrationOnPostgres:
    def test_full_replace_is_idempotent(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)

        first = _ctx()
        run_migration(first, store, parsed=SCENARIO, sleep=lambda s: None)
        keys_after_first = {
            (r["name"], tuple(r["frets"]), r["baseFret"], r["position"])
            for r in store.query(PARTITION)
        }

        second = _ctx()
        run_migration(second, store, parsed=SCENARIO, sleep=lambda s: None)
        keys_after_second = {
            (r["name"], tuple(r["frets"]), r["baseFret"], r["position"])
            for r in store.query(PARTITION)
        }

        assert _count(conn) == 3
        assert keys_after_first == keys_after_second
        assert second.counters.deleted == 3
        assert second.counters.verified_actual == 3
        assert second.counters.verification_mismatch is False

    def test_personal_chords_survive_full_replace(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        store.transact([TxStep.upsert("mine", _record("C", "C", libraryType="personal"))])

        run_migration(_ctx(), store, parsed=SCENARIO, sleep=lambda s: None)

        assert _count(conn, "library_type = 'personal'") == 1
        assert _count(conn, "library_type = 'main'") == 3

    def test_incremental_skips_duplicates(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        store.transact([TxStep.upsert("existing", _record("C", "C"))])

        ctx = _ctx(INCREMENTAL)
        run_migration(ctx, store, parsed=SCENARIO, sleep=lambda s: None)

        assert _count(conn) == 3
        assert ctx.counters.duplicates_skipped == 1
        assert store.query(QueryFilter(ids=("existing",)))

    def test_lookup_after_migration(self, db_conn):
        conn, _ = db_conn
        store = PgChordStore(conn)
        run_migration(_ctx(), store, parsed=SCENARIO, sleep=lambda s: None)

        view = load_library(store)
        assert len(view.chords) == 3
        groups, _ = search_library(store, "Cm")
        assert [g.name for g in groups] == ["Cm"]
        assert [c["position"] for c in groups[0].chords] == [1, 2]

        census = library_census(store)
        assert (census.total, census.main, census.personal) == (3, 3, 0)


# ---------------------------------------------------------------------------
# CLI against PostgreSQL
# ---------------------------------------------------------------------------

class TestCliPostgres:
    @pytest.fixture()
    def invoke(self, db_conn, tmp_path, monkeypatch):
        from click.testing import CliRunner

        _, dsn = db_conn
        monkeypatch.chdir(tmp_path)
        runner = CliRunner()

        def _invoke(*args):
            with patch("chord_etl.migrate.fetch_source_dataset", return_value=SCENARIO):
                return runner.invoke(main, [
                    "--store", "postgres",
                    "--db-dsn", dsn,
                    "--profile", "db",
                    "--settle-seconds", "0",
                    *args,
                ])

        return _invoke

    def test_two_runs_leave_one_copy(self, db_conn, tmp_path, invoke):
        conn, _ = db_conn

        first = invoke("--run-id", "pg-cli-1")
        assert first.exit_code == 0, f"CLI failed:\n{first.output}"
        second = invoke("--run-id", "pg-cli-2")
        assert second.exit_code == 0, f"CLI failed:\n{second.output}"

        assert _count(conn) == 3
        report = json.loads((tmp_path / "artifacts" / "reports" / "pg-cli-2.json").read_text())
        assert report["store"] == "postgres"
        assert report["counters"]["deleted"] == 3
        assert report["counters"]["inserted"] == 3

    def test_dry_run_writes_nothing(self, db_conn, invoke):
        conn, _ = db_conn
        result = invoke("--dry-run", "--run-id", "pg-dry")
        assert result.exit_code == 0, f"CLI failed:\n{result.output}"
        assert _count(conn) == 0

    def test_census(self, db_conn, invoke):
        invoke("--run-id", "pg-seed")
        result = invoke("--mode", "census", "--run-id", "pg-census")
        assert result.exit_code == 0, result.output
        assert "main     : 3" in result.output
