"""
Batch Writer

Buffers sealed usage records and flushes them to the durable store in
batches, either when the buffer reaches batch_size or every flush_interval
seconds. A failed flush puts the batch back at the front of the queue in its
original order and backs off exponentially; nothing is dropped.

Delivery is at-least-once. The store ignores ids it already holds, so a
batch replayed after a partial failure produces no duplicates.
"""

import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

import structlog

from ..core.usage import UsageRecord, utc_iso

logger = structlog.get_logger()


class UsageStore(Protocol):
    def upsert_many(self, records: List[UsageRecord], stored_at: str) -> int:
        ...


class BatchWriter:
    """
    Thread-safe write buffer in front of a UsageStore.

    Enqueue is cheap and never blocks on the store. At most one flush runs
    at a time.
    """

    def __init__(
        self,
        store: UsageStore,
        flush_interval: float = 60.0,
        batch_size: int = 1000,
        max_backoff: float = 300.0,
        base_backoff: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.store = store
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.max_backoff = max_backoff
        self.base_backoff = base_backoff
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._queue: Deque[UsageRecord] = deque()
        self._queue_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._consecutive_failures = 0
        self._retry_at = 0.0  # time.monotonic()
        self._stats: Dict[str, Any] = {
            "enqueued": 0,
            "flushed": 0,
            "inserted": 0,
            "flushes": 0,
            "failed_flushes": 0,
            "last_flush_at": None,
            "last_error": None,
        }

    # ========================================================================
    # Producer side
    # ========================================================================

    def enqueue(self, record: UsageRecord) -> int:
        """Append a sealed record. Returns the queue depth."""
        with self._queue_lock:
            self._queue.append(record)
            self._stats["enqueued"] += 1
            depth = len(self._queue)

        if depth >= self.batch_size:
            self._wake.set()
        return depth

    @property
    def pending_count(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def pending_records(self) -> List[UsageRecord]:
        """Snapshot of buffered records, oldest first."""
        with self._queue_lock:
            return list(self._queue)

    # ========================================================================
    # Flushing
    # ========================================================================

    def flush(self) -> int:
        """
        Write one batch of up to batch_size records.

        Returns the number of records handed to the store successfully, 0 if
        the queue was empty, another flush was running, or the store failed.
        """
        if not self._flush_lock.acquire(blocking=False):
            return 0

        try:
            with self._queue_lock:
                count = min(len(self._queue), self.batch_size)
                batch = [self._queue.popleft() for _ in range(count)]

            if not batch:
                return 0

            try:
                inserted = self.store.upsert_many(batch, utc_iso(self.clock()))
            except Exception as e:
                self._requeue(batch, e)
                return 0

            self._consecutive_failures = 0
            self._retry_at = 0.0
            self._stats["flushed"] += len(batch)
            self._stats["inserted"] += inserted
            self._stats["flushes"] += 1
            self._stats["last_flush_at"] = utc_iso(self.clock())

            logger.info(
                "batch_flushed",
                records=len(batch),
                inserted=inserted,
                pending=self.pending_count,
            )
            return len(batch)
        finally:
            self._flush_lock.release()

    def _requeue(self, batch: List[UsageRecord], error: Exception) -> None:
        with self._queue_lock:
            # extendleft reverses, so feed it reversed to keep original order
            self._queue.extendleft(reversed(batch))

        self._consecutive_failures += 1
        delay = min(self.max_backoff, self.base_backoff * (2 ** (self._consecutive_failures - 1)))
        self._retry_at = time.monotonic() + delay
        self._stats["failed_flushes"] += 1
        self._stats["last_error"] = str(error)

        logger.warning(
            "batch_flush_failed",
            error=str(error),
            error_type=type(error).__name__,
            records=len(batch),
            consecutive_failures=self._consecutive_failures,
            retry_in_seconds=delay,
        )

    def drain(self) -> int:
        """Flush until the queue is empty or a flush fails."""
        total = 0
        while True:
            written = self.flush()
            if written == 0:
                return total
            total += written

    @property
    def backoff_remaining(self) -> float:
        return max(0.0, self._retry_at - time.monotonic())

    # ========================================================================
    # Background lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start the background flush thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="usage-batch-writer", daemon=True)
        self._thread.start()
        logger.info(
            "batch_writer_started",
            flush_interval=self.flush_interval,
            batch_size=self.batch_size,
        )

    def stop(self, drain: bool = True, timeout: Optional[float] = 30.0) -> int:
        """
        Stop the background thread, optionally draining the buffer.

        Returns the number of records still pending afterwards.
        """
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

        if drain:
            self.drain()

        remaining = self.pending_count
        if remaining:
            logger.error("batch_writer_stopped_with_pending", pending=remaining)
        else:
            logger.info("batch_writer_stopped")
        return remaining

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stopping.is_set():
            if self._consecutive_failures:
                timeout = max(self.backoff_remaining, 0.1)
            else:
                timeout = self.flush_interval
            self._wake.wait(timeout=timeout)
            self._wake.clear()
            if self._stopping.is_set():
                break
            if self.backoff_remaining > 0:
                continue

            # Keep going while full batches are waiting
            while self.flush() and self.pending_count >= self.batch_size:
                pass

    def stats(self) -> Dict[str, Any]:
        with self._queue_lock:
            stats = dict(self._stats)
            stats["pending"] = len(self._queue)
        stats["consecutive_failures"] = self._consecutive_failures
        stats["backoff_remaining"] = self.backoff_remaining
        stats["running"] = self.running
        return stats
