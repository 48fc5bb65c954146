"""chord_etl.source

Fetch the third-party chord dataset (chords-db JSON) over HTTP.

A fetch failure is fatal for the whole run: fetch_source_dataset either
returns the parsed document or raises FetchError after exhausting retries.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from chord_etl.retry import Err, exponential_backoff, with_retry
from chord_etl.shared import FetchError

log = logging.getLogger(__name__)

USER_AGENT = "chord-etl/1.0 (chord library migration)"


def _get_json(
    session: requests.Session,
    url: str,
    timeout: float | None,
) -> Any:
    resp = session.get(url, timeout=timeout)
    if not 200 <= resp.status_code < 300:
        raise requests.HTTPError(
            f"HTTP {resp.status_code}: {resp.reason}", response=resp
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise requests.RequestException(f"invalid JSON from {url}: {exc}") from exc


def fetch_source_dataset(
    url: str,
    max_attempts: int = 3,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
    timeout: float | None = None,
    backoff_base_seconds: float = 1.0,
) -> Any:
    """GET url and return the parsed JSON document.

    Non-2xx responses, transport errors and undecodable bodies all count as
    a failed attempt.  Delay between attempts is 2**attempt seconds.

    Raises:
        FetchError: after max_attempts failures, carrying the attempt count.
    """
    own_session = session is None
    if session is None:
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})

    try:
        result = with_retry(
            lambda: _get_json(session, url, timeout),
            max_attempts=max_attempts,
            backoff=exponential_backoff(backoff_base_seconds),
            sleep=sleep,
            retry_on=(requests.RequestException,),
            label=f"GET {url}",
        )
    finally:
        if own_session:
            session.close()

    if isinstance(result, Err):
        log.error("Source fetch failed after %d attempt(s): %s", result.attempts, result.error)
        raise FetchError(
            f"failed to fetch {url} after {result.attempts} attempt(s): {result.error}",
            attempts=result.attempts,
        ) from result.error

    return result.value
