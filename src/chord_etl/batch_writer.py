"""chord_etl.batch_writer

Sequential, bounded-size batch writes against a ChordStore.

Per chunk:
  1. Submit the chunk as one atomic transact() request.
  2. On failure, retry the same chunk up to policy.max_retries times with
     linear backoff (1 * step, 2 * step, ...).  Retries reuse the same ids,
     so a retry after a silent partial commit upserts rather than duplicates.
  3. A chunk larger than policy.degrade_threshold whose first attempt
     raised is split into policy.degrade_batch_size sub-chunks instead of
     being retried whole; each sub-chunk then gets the normal retry budget.
  4. With policy.verify, a committed chunk is re-queried by id; fewer rows
     than submitted counts as a failed attempt and the whole chunk is retried.
  5. A chunk that exhausts its retries is recorded as a FailedBatch and the
     run moves on.  Nothing here raises for a write failure.

Chunks are written strictly in order.  policy.inter_chunk_delay_seconds is
slept after a chunk that committed, never after a failed chunk or the last one.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence, TypeVar

from chord_etl.retry import Ok, linear_backoff, with_retry
from chord_etl.shared import StoreError
from chord_etl.store import ChordStore, QueryFilter, TxStep, WriteFailure

log = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Policy + results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BatchPolicy:
    batch_size: int = 15
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    inter_chunk_delay_seconds: float = 0.4
    degrade_threshold: int = 0
    degrade_batch_size: int = 0
    verify: bool = False
    verify_delay_seconds: float = 0.5
    progress_every: int = 20

    @property
    def degrades(self) -> bool:
        return self.degrade_threshold > 0 and self.degrade_batch_size > 0


@dataclass
class FailedBatch:
    index: int
    size: int
    item_ids: list[str]
    reason: str
    attempts: int
    persisted: int | None = None
    sub_index: int | None = None

    @property
    def label(self) -> str:
        if self.sub_index is None:
            return f"#{self.index + 1}"
        return f"#{self.index + 1}.{self.sub_index + 1}"


@dataclass
class BatchWriteResult:
    chunks: int = 0
    succeeded: int = 0
    failed: list[FailedBatch] = field(default_factory=list)
    retries: int = 0
    degraded: int = 0

    @property
    def failed_count(self) -> int:
        return sum(fb.size for fb in self.failed)

    @property
    def failed_ids(self) -> list[str]:
        return [i for fb in self.failed for i in fb.item_ids]


class BatchAttemptError(Exception):
    """One failed attempt at a chunk (transact failure or short verification)."""

    def __init__(self, reason: str, raised: bool = False, persisted: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raised = raised
        self.persisted = persisted


# ---------------------------------------------------------------------------
# Partitioning
# ---------------------------------------------------------------------------

def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Consecutive chunks of at most size items, order preserved."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Chunk write
# ---------------------------------------------------------------------------

def _attempt(
    store: ChordStore,
    chunk: list[TxStep],
    policy: BatchPolicy,
    sleep: Callable[[float], None],
) -> int:
    outcome = store.transact(chunk)
    if isinstance(outcome, WriteFailure):
        raise BatchAttemptError(outcome.reason, raised=outcome.raised)

    if policy.verify:
        if policy.verify_delay_seconds > 0:
            sleep(policy.verify_delay_seconds)
        ids = tuple(step.chord_id for step in chunk)
        try:
            persisted = len(store.query(QueryFilter(ids=ids)))
        except StoreError as exc:
            raise BatchAttemptError(f"verification query failed: {exc}", persisted=0) from exc
        if persisted < len(chunk):
            raise BatchAttemptError(
                f"only {persisted}/{len(chunk)} persisted", persisted=persisted
            )
    return len(chunk)


def _write_chunk(
    store: ChordStore,
    chunk: list[TxStep],
    index: int,
    policy: BatchPolicy,
    sleep: Callable[[float], None],
    result: BatchWriteResult,
    label: str,
    sub_index: int | None = None,
) -> None:
    degradable = sub_index is None and policy.degrades and len(chunk) > policy.degrade_threshold

    outcome = with_retry(
        lambda: _attempt(store, chunk, policy, sleep),
        max_attempts=policy.max_retries + 1,
        backoff=linear_backoff(policy.retry_delay_seconds),
        sleep=sleep,
        retry_on=(BatchAttemptError,),
        give_up=lambda exc, attempt: degradable and attempt == 0 and exc.raised,
        label=f"{label} chunk {index + 1}",
    )
    result.retries += outcome.attempts - 1

    if isinstance(outcome, Ok):
        result.succeeded += len(chunk)
        return

    err = outcome.error
    if degradable and outcome.attempts == 1 and err.raised:
        subs = chunked(chunk, policy.degrade_batch_size)
        log.warning(
            "%s chunk %d (%d items) failed outright: %s; retrying as %d chunk(s) of %d",
            label, index + 1, len(chunk), err, len(subs), policy.degrade_batch_size,
        )
        result.degraded += 1
        for j, sub in enumerate(subs):
            if j and policy.inter_chunk_delay_seconds > 0:
                sleep(policy.inter_chunk_delay_seconds)
            _write_chunk(store, sub, index, policy, sleep, result, label, sub_index=j)
        return

    failed = FailedBatch(
        index=index,
        size=len(chunk),
        item_ids=[s.chord_id for s in chunk],
        reason=str(err),
        attempts=outcome.attempts,
        persisted=getattr(err, "persisted", None),
        sub_index=sub_index,
    )
    log.error(
        "%s chunk %s failed after %d attempt(s): %s",
        label, failed.label, failed.attempts, failed.reason,
    )
    result.failed.append(failed)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def write_batches(
    store: ChordStore,
    steps: Sequence[TxStep],
    policy: BatchPolicy = BatchPolicy(),
    batch_size: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "insert",
) -> BatchWriteResult:
    """Write steps in ceil(N / batch_size) sequential chunks."""
    size = batch_size or policy.batch_size
    chunks = chunked(steps, size)
    result = BatchWriteResult(chunks=len(chunks))
    written = 0

    for index, chunk in enumerate(chunks):
        failed_before = len(result.failed)
        _write_chunk(store, chunk, index, policy, sleep, result, label)
        written += len(chunk)
        done = index + 1
        if done % policy.progress_every == 0 or done == len(chunks):
            log.info(
                "%s chunk %d/%d: %d/%d submitted, %d ok, %d failed",
                label, done, len(chunks), written, len(steps),
                result.succeeded, result.failed_count,
            )
        committed = len(result.failed) == failed_before
        if committed and done < len(chunks) and policy.inter_chunk_delay_seconds > 0:
            sleep(policy.inter_chunk_delay_seconds)

    return result


def delete_in_batches(
    store: ChordStore,
    ids: Sequence[str],
    policy: BatchPolicy,
    batch_size: int,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchWriteResult:
    """Delete ids in their own chunk group.  No per-chunk verification."""
    steps = [TxStep.delete(chord_id) for chord_id in ids]
    delete_policy = replace(policy, verify=False, degrade_threshold=0, degrade_batch_size=0)
    return write_batches(
        store, steps, delete_policy, batch_size=batch_size, sleep=sleep, label="delete"
    )
