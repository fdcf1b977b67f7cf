"""Concurrency primitives shared by the orchestration stages.

``parallel_map`` runs independent work items on a bounded number of
threads, ``retry_with_backoff`` retries a single operation with
exponential (jittered) delays and ``pick_best_by`` selects the top
scoring item.  ``CancelToken`` is threaded through all of them so a
cancelled session stops between units of work.
"""
from __future__ import annotations

import logging
import queue
import random
import threading
import time
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from refinery.core.errors import SessionCancelled

logger = logging.getLogger("refinery.concurrency")

T = TypeVar("T")
R = TypeVar("R")


class CancelToken:
    """Cooperative cancellation flag backed by a ``threading.Event``."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionCancelled("session was cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


def parallel_map(
    items: Iterable[T],
    worker: Callable[[T], R],
    concurrency: int = 4,
) -> List[Any]:
    """Run *worker* over *items* with at most *concurrency* threads.

    Results are appended in completion order, not input order.  A worker
    exception is captured as ``{"error", "item", "failed": True}`` and never
    aborts the rest of the batch.
    """
    work = list(items)
    if not work:
        return []

    pending: "queue.Queue[T]" = queue.Queue()
    for item in work:
        pending.put(item)

    results: List[Any] = []
    results_lock = threading.Lock()

    def _lane() -> None:
        while True:
            try:
                item = pending.get_nowait()
            except queue.Empty:
                return
            try:
                outcome: Any = worker(item)
            except Exception as exc:  # noqa: BLE001
                logger.warning("parallel_map worker failed: %s", exc)
                outcome = {"error": str(exc) or exc.__class__.__name__, "item": item, "failed": True}
            with results_lock:
                results.append(outcome)

    lane_count = min(max(1, concurrency), len(work))
    lanes = [
        threading.Thread(target=_lane, daemon=True, name=f"parallel-map-{i}")
        for i in range(lane_count)
    ]
    for lane in lanes:
        lane.start()
    for lane in lanes:
        lane.join()
    return results


def retry_with_backoff(
    operation: Callable[[], R],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    jitter: float = 0.5,
    sleep: Optional[Callable[[float], Any]] = None,
    cancel_token: Optional[CancelToken] = None,
) -> R:
    """Call *operation* until it succeeds or *max_attempts* is exhausted.

    Attempt ``k`` (0-indexed) failing waits ``base_delay * 2**k`` scaled by a
    random factor in ``[1 - jitter, 1 + jitter]``.  There is no wait after the
    last attempt; the last error is re-raised.  When a *cancel_token* is given
    the wait is interruptible and cancellation raises ``SessionCancelled``.
    """
    attempts = max(1, max_attempts)
    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            return operation()
        except SessionCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            if attempt >= attempts - 1:
                break
            delay = backoff_delay(attempt, base_delay, jitter)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt + 1, attempts, exc, delay,
            )
            if sleep is not None:
                sleep(delay)
            elif cancel_token is not None:
                if cancel_token.wait(delay):
                    raise SessionCancelled("session was cancelled") from exc
            else:
                time.sleep(delay)
    assert last_error is not None
    raise last_error


def backoff_delay(attempt: int, base_delay: float, jitter: float = 0.5) -> float:
    delay = base_delay * (2 ** attempt)
    if jitter > 0:
        delay *= random.uniform(max(0.0, 1.0 - jitter), 1.0 + jitter)
    return delay


def pick_best_by(items: Sequence[T], score_fn: Callable[[T], float]) -> Optional[T]:
    """Return the highest scoring item; ties keep the earliest one."""
    if not items:
        return None
    best = items[0]
    best_score = score_fn(best)
    for item in items[1:]:
        score = score_fn(item)
        if score > best_score:
            best, best_score = item, score
    return best


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return -(-len(text) // 4)
