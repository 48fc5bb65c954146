"""chord_etl.store

Destination-store adapters.

The pipeline consumes exactly two operations from the store:

  query(QueryFilter)      -> list of record dicts (camelCase, with "id")
  transact(list[TxStep])  -> WriteOutcome (WriteSuccess | WriteFailure)

transact never raises: transport errors, non-2xx responses and error-shaped
success payloads ({"error": ...}) all come back as WriteFailure, so the
batch writer sees a single failure channel.  WriteFailure.raised tells the
"request blew up" case (a candidate for chunk-size degradation) apart from
a validation-style rejection.

Adapters:
  InstantAdminStore  hosted database admin HTTP API (/admin/query, /admin/transact)
  PgChordStore       PostgreSQL mirror table `chord` (migrations/0001_chord_library.sql)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union

import psycopg
import requests
from psycopg import errors as pg_errors

from chord_etl.shared import (
    DEFAULT_API_BASE,
    QueryTimeoutError,
    StoreError,
)

log = logging.getLogger(__name__)

ENTITY = "chords"

_TIMEOUT_MARKERS = ("operation-timed-out", "operation_timed_out", "timed out", "timed-out")


# ---------------------------------------------------------------------------
# Filter / step / outcome types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueryFilter:
    """Exact-match filters plus an optional substring match on name."""

    library_type: str | None = None
    instrument: str | None = None
    tuning: str | None = None
    key: str | None = None
    keys: tuple[str, ...] | None = None
    name: str | None = None
    name_like: str | None = None
    ids: tuple[str, ...] | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.key is not None and self.keys is not None:
            raise ValueError("QueryFilter takes key or keys, not both")

    @classmethod
    def partition(
        cls,
        library_type: str,
        instrument: str,
        tuning: str,
        **kwargs: Any,
    ) -> "QueryFilter":
        return cls(library_type=library_type, instrument=instrument, tuning=tuning, **kwargs)

    def where(self) -> dict[str, Any]:
        """Render as an admin-API `where` clause."""
        clause: dict[str, Any] = {}
        if self.library_type is not None:
            clause["libraryType"] = self.library_type
        if self.instrument is not None:
            clause["instrument"] = self.instrument
        if self.tuning is not None:
            clause["tuning"] = self.tuning
        if self.key is not None:
            clause["key"] = self.key
        if self.keys is not None:
            clause["key"] = {"$in": list(self.keys)}
        if self.name is not None:
            clause["name"] = self.name
        if self.name_like is not None:
            clause["name"] = {"$like": f"%{self.name_like}%"}
        if self.ids is not None:
            clause["id"] = {"$in": list(self.ids)}
        return clause


@dataclass(frozen=True)
class TxStep:
    op: str  # "update" | "delete"
    chord_id: str
    data: dict[str, Any] | None = None

    @classmethod
    def upsert(cls, chord_id: str, data: dict[str, Any]) -> "TxStep":
        return cls("update", chord_id, data)

    @classmethod
    def delete(cls, chord_id: str) -> "TxStep":
        return cls("delete", chord_id)

    def to_wire(self) -> list[Any]:
        if self.op == "delete":
            return ["delete", ENTITY, self.chord_id]
        return ["update", ENTITY, self.chord_id, self.data or {}]


@dataclass(frozen=True)
class WriteSuccess:
    result: Any = None


@dataclass(frozen=True)
class WriteFailure:
    reason: str
    raised: bool = False


WriteOutcome = Union[WriteSuccess, WriteFailure]


class ChordStore(Protocol):
    def query(self, filt: QueryFilter) -> list[dict[str, Any]]:
        ...

    def transact(self, steps: list[TxStep]) -> WriteOutcome:
        ...

    def close(self) -> None:
        ...


def is_timeout_message(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _TIMEOUT_MARKERS)


# ---------------------------------------------------------------------------
# Hosted admin HTTP API
# ---------------------------------------------------------------------------

class InstantAdminStore:
    """Admin HTTP API client.  No client-side timeout unless one is given."""

    def __init__(
        self,
        app_id: str,
        admin_token: str,
        api_base: str = DEFAULT_API_BASE,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ) -> None:
        self.app_id = app_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Authorization": f"Bearer {admin_token}",
            "App-Id": app_id,
        })

    def _post(self, path: str, payload: dict[str, Any]) -> requests.Response:
        return self._session.post(
            f"{self.api_base}{path}", json=payload, timeout=self.timeout
        )

    def query(self, filt: QueryFilter) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"where": filt.where()}
        if filt.limit is not None:
            params["limit"] = filt.limit
        try:
            resp = self._post("/admin/query", {"query": {ENTITY: {"$": params}}})
        except requests.Timeout as exc:
            raise QueryTimeoutError(f"query timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise StoreError(f"query failed: {exc}") from exc

        if not resp.ok:
            body = resp.text
            if is_timeout_message(body):
                raise QueryTimeoutError(f"HTTP {resp.status_code}: {body}")
            raise StoreError(f"HTTP {resp.status_code}: {body}")

        try:
            data = resp.json() or {}
        except ValueError as exc:
            raise StoreError(f"invalid JSON from /admin/query: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"unexpected /admin/query payload: {type(data).__name__}")
        if isinstance(data.get("error"), (str, dict)):
            message = str(data["error"])
            if is_timeout_message(message) or is_timeout_message(str(data.get("type"))):
                raise QueryTimeoutError(message)
            raise StoreError(message)
        rows = data.get(ENTITY)
        if rows is None and isinstance(data.get("data"), dict):
            rows = data["data"].get(ENTITY)
        rows = list(rows or [])
        log.debug("query where=%s -> %d row(s)", params["where"], len(rows))
        return rows

    def transact(self, steps: list[TxStep]) -> WriteOutcome:
        try:
            resp = self._post("/admin/transact", {"steps": [s.to_wire() for s in steps]})
        except requests.RequestException as exc:
            return WriteFailure(f"transport error: {exc}", raised=True)

        if not resp.ok:
            return WriteFailure(f"HTTP {resp.status_code}: {resp.text}", raised=True)

        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return WriteFailure(f"transaction error: {data['error']}")
        return WriteSuccess(data)

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# PostgreSQL mirror
# ---------------------------------------------------------------------------

_PG_COLUMNS = (
    "id", "name", "key", "suffix", "frets", "fingers", "base_fret",
    "barres", "position", "instrument", "tuning", "library_type",
)

_RECORD_FIELDS = {
    "name": "name",
    "key": "key",
    "suffix": "suffix",
    "frets": "frets",
    "fingers": "fingers",
    "baseFret": "base_fret",
    "barres": "barres",
    "position": "position",
    "instrument": "instrument",
    "tuning": "tuning",
    "libraryType": "library_type",
}

_JSON_COLUMNS = {"frets", "fingers", "barres"}


class PgChordStore:
    """Store adapter over the `chord` table.

    Expects an autocommit connection: every transact() is its own
    transaction block and either fully applies or fully rolls back.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def query(self, filt: QueryFilter) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for attr, column in (
            ("library_type", "library_type"),
            ("instrument", "instrument"),
            ("tuning", "tuning"),
            ("key", "key"),
            ("name", "name"),
        ):
            value = getattr(filt, attr)
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if filt.keys is not None:
            clauses.append("key = ANY(%s)")
            params.append(list(filt.keys))
        if filt.ids is not None:
            clauses.append("id = ANY(%s)")
            params.append(list(filt.ids))
        if filt.name_like is not None:
            clauses.append("name LIKE %s")
            params.append(f"%{filt.name_like}%")

        sql = f"SELECT {', '.join(_PG_COLUMNS)} FROM chord"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, id ASC"
        if filt.limit is not None:
            sql += " LIMIT %s"
            params.append(filt.limit)

        try:
            rows = self.conn.execute(sql, params).fetchall()
        except pg_errors.QueryCanceled as exc:
            raise QueryTimeoutError(f"query timed out: {exc}") from exc
        except psycopg.Error as exc:
            raise StoreError(f"query failed: {exc}") from exc
        return [_row_to_record(row) for row in rows]

    def transact(self, steps: list[TxStep]) -> WriteOutcome:
        try:
            with self.conn.transaction():
                for step in steps:
                    if step.op == "delete":
                        self.conn.execute("DELETE FROM chord WHERE id = %s", (step.chord_id,))
                    elif step.op == "update":
                        self._upsert(step.chord_id, step.data or {})
                    else:
                        raise ValueError(f"unknown step op {step.op!r}")
        except (psycopg.Error, ValueError) as exc:
            return WriteFailure(f"transaction error: {exc}", raised=True)
        return WriteSuccess(len(steps))

    def _upsert(self, chord_id: str, data: dict[str, Any]) -> None:
        columns = ["id"]
        placeholders = ["%s"]
        values: list[Any] = [chord_id]
        for field_name, column in _RECORD_FIELDS.items():
            if field_name in data:
                columns.append(column)
                value = data[field_name]
                if column in _JSON_COLUMNS:
                    placeholders.append("%s::jsonb")
                    values.append(json.dumps(value))
                else:
                    placeholders.append("%s")
                    values.append(value)
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns[1:]) or "id = EXCLUDED.id"
        self.conn.execute(
            f"""
            INSERT INTO chord ({', '.join(columns)})
            VALUES ({', '.join(placeholders)})
            ON CONFLICT (id) DO UPDATE SET {updates}
            """,
            values,
        )

    def close(self) -> None:
        self.conn.close()


def _row_to_record(row: tuple) -> dict[str, Any]:
    (chord_id, name, key, suffix, frets, fingers, base_fret,
     barres, position, instrument, tuning, library_type) = row
    return {
        "id": str(chord_id),
        "name": name,
        "key": key,
        "suffix": suffix,
        "frets": frets,
        "fingers": fingers or [],
        "baseFret": base_fret,
        "barres": barres or [],
        "position": position,
        "instrument": instrument,
        "tuning": tuning,
        "libraryType": library_type,
    }
