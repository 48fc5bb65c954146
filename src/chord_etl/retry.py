"""chord_etl.retry

Reusable retry combinator with pluggable backoff.

with_retry() never raises the operation's error; it returns a tagged result
(Ok or Err) so callers decide whether a failure is fatal (source fetch) or
only counted (batch writes).

Usage:
    result = with_retry(fetch, max_attempts=3, backoff=exponential_backoff(1.0))
    if isinstance(result, Err):
        raise FetchError(str(result.error), attempts=result.attempts)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Union

log = logging.getLogger(__name__)

Backoff = Callable[[int], float]


# ---------------------------------------------------------------------------
# Tagged result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Ok:
    value: Any
    attempts: int = 1


@dataclass(frozen=True)
class Err:
    error: Exception
    attempts: int


RetryResult = Union[Ok, Err]


# ---------------------------------------------------------------------------
# Backoff policies
# ---------------------------------------------------------------------------

def exponential_backoff(base_seconds: float = 1.0) -> Backoff:
    """Delay after failed attempt n (0-based) is base * 2**n: 1s, 2s, 4s ..."""
    def _delay(attempt: int) -> float:
        return base_seconds * (2 ** attempt)
    return _delay


def linear_backoff(step_seconds: float = 1.0) -> Backoff:
    """Delay after failed attempt n (0-based) is step * (n + 1): 1s, 2s, 3s ..."""
    def _delay(attempt: int) -> float:
        return step_seconds * (attempt + 1)
    return _delay


def no_backoff(attempt: int) -> float:
    return 0.0


# ---------------------------------------------------------------------------
# Combinator
# ---------------------------------------------------------------------------

def with_retry(
    operation: Callable[[], Any],
    max_attempts: int = 3,
    backoff: Backoff = exponential_backoff(),
    sleep: Callable[[float], None] = time.sleep,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    give_up: Callable[[Exception, int], bool] | None = None,
    label: str = "operation",
) -> RetryResult:
    """Call operation until it returns, up to max_attempts times.

    Exceptions outside retry_on propagate unchanged.  give_up(exc, attempt)
    may end the loop early; the Err then carries the attempts made so far.
    No delay follows the final attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Exception | None = None
    for attempt in range(max_attempts):
        try:
            return Ok(operation(), attempts=attempt + 1)
        except retry_on as exc:
            last_error = exc
            if give_up is not None and give_up(exc, attempt):
                return Err(exc, attempts=attempt + 1)
            if attempt == max_attempts - 1:
                break
            delay = backoff(attempt)
            log.warning(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                label, attempt + 1, max_attempts, exc, delay,
            )
            if delay > 0:
                sleep(delay)

    assert last_error is not None
    return Err(last_error, attempts=max_attempts)
