"""
Entry buffer: accumulates term entries and flushes them to a sink.

Producers record occurrences as they parse pages. Entries for the same
(subject, relevance, target) are merged in a live map while a running size
estimate is kept. Once the estimate passes the configured capacity, the
next ``maybe_flush()`` detaches the live map as a generation, serializes it
in natural order and pushes it to the sink on a background thread.

Key concepts:
- One lock guards the live map, the estimate, the shutdown flag and the
  in-flight slot; it is never held across serialization or I/O
- At most one generation is in flight; ``maybe_flush()`` is a no-op while
  one is, and ``flush_now()`` treats it as a programming error
- A failed push is logged and the generation is dropped (best effort)
- On shutdown the live map is saved to a recovery file, which the next
  flush of a later run pushes after its own generation and then deletes
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Optional, Union

from termbuffer.entries import TermPageEntry, check_offset
from termbuffer.formats.records import encode_entries
from termbuffer.observability import MetricsCollector
from termbuffer.sinks import Sink, push_with_timeout
from termbuffer.storage.crawl_state import CrawlStateTracker, PageStatus
from termbuffer.storage.recovery import (
    DEFAULT_RECOVERY_PATH,
    RecoveryFile,
    RecoveryWriteFailure,
)

logger = logging.getLogger(__name__)

# Charged to the estimate for every position added, duplicate offsets included
POSITION_COST = 4


class InvariantViolation(RuntimeError):
    """Raised when the buffer is driven in a way its protocol forbids."""
    pass


class DeliveryConsistencyError(InvariantViolation):
    """A batch was delivered but the crawl state could not record it."""
    pass


class BufferClosedError(RuntimeError):
    """Raised when a producer calls into a buffer that has been shut down."""
    pass


@dataclass
class FlushOutcome:
    """Result of one flush generation."""
    generation: int
    entry_count: int
    size_estimate: int
    payload_bytes: int = 0
    delivered: bool = False
    recovery_pushed: bool = False
    duration_seconds: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "generation": self.generation,
            "entry_count": self.entry_count,
            "size_estimate": self.size_estimate,
            "payload_bytes": self.payload_bytes,
            "delivered": self.delivered,
            "recovery_pushed": self.recovery_pushed,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
        }


@dataclass
class BufferStats:
    """Point-in-time view of the buffer."""
    live_entries: int
    size_estimate: int
    capacity: int
    flush_in_flight: bool
    shutdown: bool
    generations: int
    time_stalled: float
    time_not_stalled: float

    def to_dict(self) -> dict:
        return {
            "live_entries": self.live_entries,
            "size_estimate": self.size_estimate,
            "capacity": self.capacity,
            "flush_in_flight": self.flush_in_flight,
            "shutdown": self.shutdown,
            "generations": self.generations,
            "time_stalled": self.time_stalled,
            "time_not_stalled": self.time_not_stalled,
        }


class EntryBuffer:
    """
    Bounded accumulator of TermPageEntry facts.

    Usage:
        buffer = EntryBuffer(DirectorySink("spool"), tracker, capacity=3_000_000)
        buffer.start()

        entry = buffer.record_occurrence("river", "doc://42")
        buffer.add_position(entry, 17, "...the river bank...")
        buffer.set_title(entry, "Rivers of the world")
        buffer.maybe_flush()   # after each parsed page

        buffer.terminate()     # saves whatever is still buffered
    """

    def __init__(
        self,
        sink: Sink,
        tracker: Optional[CrawlStateTracker] = None,
        *,
        capacity: int = 0,
        recovery_file: Union[RecoveryFile, str, None] = None,
        push_timeout: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize the buffer.

        Args:
            sink: Receives serialized generations
            tracker: Crawl state to advance once a generation is delivered
            capacity: Size estimate that triggers a flush; 0 disables flushing
            recovery_file: Where undelivered entries are saved at shutdown
            push_timeout: Seconds a single sink push may take (None = unbounded)
            metrics: Collector to record flush metrics into
        """
        if capacity < 0:
            raise ValueError(f"Capacity must be >= 0, got {capacity}")

        if isinstance(recovery_file, RecoveryFile):
            self._recovery = recovery_file
        else:
            self._recovery = RecoveryFile(recovery_file or DEFAULT_RECOVERY_PATH)

        self._sink = sink
        self._tracker = tracker
        self._capacity = capacity
        self._push_timeout = push_timeout

        # Accumulation state, guarded by _lock
        self._lock = threading.Lock()
        self._live: dict[TermPageEntry, TermPageEntry] = {}
        self._estimate = 0
        self._shutdown = False
        self._pushing: Optional[dict[TermPageEntry, TermPageEntry]] = None
        self._pending: Optional[Future] = None
        self._generations = 0

        # Flush timing, guarded by _timing_lock
        self._timing_lock = threading.Lock()
        self._time_stalled = 0.0
        self._time_not_stalled = 0.0
        self._time_last_not_stalled = time.time()

        # Serializes the recovery push against the shutdown write
        self._recovery_lock = threading.Lock()

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="termbuffer-flush")

        self._metrics = metrics or MetricsCollector()
        self._metrics.counter("flushes_total", "Flush generations started")
        self._metrics.counter("flush_failures_total", "Generations the sink did not accept")
        self._metrics.counter("entries_flushed_total", "Entries in delivered generations")
        self._metrics.counter("bytes_flushed_total", "Payload bytes delivered", "bytes")
        self._metrics.counter("recovery_pushes_total", "Recovery files delivered")
        self._metrics.histogram("flush_duration_seconds", "Time to serialize and push a generation", "seconds")
        self._metrics.gauge("buffer_size_estimate", "Running size estimate of the live map", "bytes")

    @classmethod
    def from_config(cls, config: Any, sink: Sink, tracker: Optional[CrawlStateTracker] = None) -> "EntryBuffer":
        """Build a buffer from a BufferConfig."""
        return cls(
            sink,
            tracker,
            capacity=config.capacity_bytes,
            recovery_file=config.recovery_path,
            push_timeout=config.push_timeout_seconds,
        )

    def __enter__(self) -> "EntryBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_shutdown:
            self.terminate()

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def recovery_file(self) -> RecoveryFile:
        return self._recovery

    @property
    def is_shutdown(self) -> bool:
        with self._lock:
            return self._shutdown

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> int:
        """
        Requeue pages a previous run buffered but never delivered.

        Returns:
            Number of pages moved back to QUEUED
        """
        if self._tracker is None:
            return 0
        moved = self._tracker.advance_status(PageStatus.NOT_PUSHED, PageStatus.QUEUED)
        if moved:
            logger.info(f"Requeued {moved} pages left undelivered by a previous run")
        return moved

    # -------------------------------------------------------------------------
    # Accumulation
    # -------------------------------------------------------------------------

    def _get(self, entry: TermPageEntry) -> TermPageEntry:
        """Return the live entry equal to ``entry``, adding a copy if absent. Caller holds _lock."""
        if self._shutdown:
            raise BufferClosedError("Buffer is shut down; no new entries are accepted")
        existing = self._live.get(entry)
        if existing is not None:
            return existing
        # Copy so a stale reference from a flushed generation is never shared
        adopted = TermPageEntry.create(
            entry.subject,
            entry.target,
            relevance=entry.relevance,
            positions=entry.positions,
            title=entry.title,
        )
        self._estimate += adopted.size_estimate()
        self._live[adopted] = adopted
        return adopted

    def record_occurrence(
        self,
        term: str,
        target: Any,
        relevance: float = 0.0,
        position: Optional[int] = None,
        fragment: Optional[str] = None,
    ) -> TermPageEntry:
        """
        Get or create the live entry for (term, relevance, target).

        If ``position`` is given it is added as by ``add_position``.

        Raises:
            InvalidFact: If ``target`` or ``term`` is None, or ``position``
                is not a storable offset
            BufferClosedError: If the buffer has been shut down
        """
        candidate = TermPageEntry(term, relevance, target)
        if position is not None:
            check_offset(position)
        with self._lock:
            entry = self._get(candidate)
            if position is not None:
                entry.put_position(position, fragment)
                self._estimate += POSITION_COST
            return entry

    def add_position(self, entry: TermPageEntry, offset: int, fragment: Optional[str] = None) -> TermPageEntry:
        """
        Add a position to an entry, charging a fixed 4 bytes.

        The charge applies even when the offset is already present.

        Raises:
            InvalidFact: If ``offset`` is not a storable offset, before any
                buffer state changes
        """
        check_offset(offset)
        with self._lock:
            live = self._get(entry)
            live.put_position(offset, fragment)
            self._estimate += POSITION_COST
            return live

    def set_title(self, entry: TermPageEntry, title: Optional[str]) -> TermPageEntry:
        """Set an entry's title. The size estimate is not adjusted."""
        with self._lock:
            live = self._get(entry)
            live.annotation.title = title
            return live

    def current_size_estimate(self) -> int:
        with self._lock:
            return self._estimate

    def live_entries(self) -> list[TermPageEntry]:
        """Live entries in natural order."""
        with self._lock:
            entries = list(self._live)
        return sorted(entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)

    # -------------------------------------------------------------------------
    # Capacity
    # -------------------------------------------------------------------------

    def set_capacity(self, capacity: int) -> None:
        """
        Change the flush threshold.

        Buffering cannot be disabled here; only a buffer constructed with
        capacity 0 is disabled.
        """
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity}")
        with self._lock:
            self._capacity = capacity

    @property
    def capacity(self) -> int:
        with self._lock:
            return self._capacity

    def is_enabled(self) -> bool:
        with self._lock:
            return self._capacity != 0

    # -------------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------------

    def _capture(self) -> Future:
        """Detach the live map as a new generation and schedule it. Caller holds _lock."""
        if self._pushing is not None:
            raise InvariantViolation("A flush generation is already in flight")

        generation = self._live
        estimate = self._estimate
        self._live = {}
        self._estimate = 0
        self._pushing = generation
        self._generations += 1

        future = self._executor.submit(self._flush_generation, self._generations, generation, estimate)
        self._pending = future
        return future

    def maybe_flush(self) -> Optional[Future]:
        """
        Start a flush if the size estimate exceeds the capacity.

        Cheap enough to call after every unit of producer work. Does nothing
        while buffering is disabled, after shutdown, or while a generation is
        still in flight.

        Push failures are reported in the outcome. A DeliveryConsistencyError
        is raised only through the returned future (and logged at CRITICAL);
        the timing counters are still updated but the recovery file is left
        untouched for the next flush. Callers that do not keep the future
        can see it with ``wait_for_flush()``.

        Returns:
            Future resolving to a FlushOutcome, or None if no flush started
        """
        with self._lock:
            self._metrics.set("buffer_size_estimate", self._estimate)
            if self._capacity == 0 or self._shutdown:
                return None
            if self._estimate <= self._capacity:
                return None
            if self._pushing is not None:
                return None
            return self._capture()

    def flush_now(self) -> Future:
        """
        Flush the live map regardless of size.

        Raises:
            InvariantViolation: If a generation is already in flight
            BufferClosedError: If the buffer has been shut down
        """
        with self._lock:
            if self._shutdown:
                raise BufferClosedError("Buffer is shut down")
            return self._capture()

    def wait_for_flush(self, timeout: Optional[float] = None) -> Optional[FlushOutcome]:
        """
        Wait for the most recent generation to resolve.

        Returns:
            Its FlushOutcome, or None if no flush was ever started

        Raises:
            Whatever the flush raised (e.g. DeliveryConsistencyError)
        """
        with self._lock:
            pending = self._pending
        if pending is None:
            return None
        return pending.result(timeout=timeout)

    def _push(self, payload: bytes) -> None:
        push_with_timeout(self._sink, payload, self._push_timeout)

    def _flush_generation(
        self,
        generation: int,
        live: dict[TermPageEntry, TermPageEntry],
        estimate: int,
    ) -> FlushOutcome:
        """Serialize and deliver a detached generation, then the recovery file."""
        outcome = FlushOutcome(generation=generation, entry_count=len(live), size_estimate=estimate)
        t_start = time.time()
        try:
            self._metrics.inc("flushes_total")
            logger.info(f"Sending buffer of estimated size {estimate} bytes ({len(live)} entries)")
            try:
                self._deliver(generation, live, outcome)
            finally:
                self._record_timing(t_start, outcome)

            # The recovery file goes second: it is already on disk, the generation is not
            outcome.recovery_pushed = self._push_recovery()
            return outcome
        finally:
            with self._lock:
                self._pushing = None

    def _deliver(
        self,
        generation: int,
        live: dict[TermPageEntry, TermPageEntry],
        outcome: FlushOutcome,
    ) -> None:
        try:
            with self._metrics.timer("flush_duration_seconds"):
                payload = encode_entries(sorted(live))
                outcome.payload_bytes = len(payload)
                self._push(payload)
        except Exception as e:
            outcome.error = str(e)
            self._metrics.inc("flush_failures_total")
            logger.error(f"Could not deliver generation {generation}, {len(live)} entries dropped: {e}", exc_info=True)
            return

        outcome.delivered = True
        self._metrics.inc("entries_flushed_total", len(live))
        self._metrics.inc("bytes_flushed_total", len(payload))
        logger.info(f"Buffer successfully sent, size = {len(payload)} bytes")
        self._mark_delivered()

    def _record_timing(self, t_start: float, outcome: FlushOutcome) -> None:
        t_end = time.time()
        outcome.duration_seconds = t_end - t_start
        with self._timing_lock:
            self._time_not_stalled += t_start - self._time_last_not_stalled
            self._time_last_not_stalled = t_end
            self._time_stalled += t_end - t_start

    def _mark_delivered(self) -> None:
        if self._tracker is None:
            return
        try:
            self._tracker.advance_status(PageStatus.NOT_PUSHED, PageStatus.SUCCEEDED)
        except Exception as e:
            logger.critical(f"Generation delivered but crawl state could not be advanced: {e}", exc_info=True)
            raise DeliveryConsistencyError(
                "Generation was delivered but its pages could not be marked succeeded"
            ) from e

    def _push_recovery(self) -> bool:
        """Push a recovery file left by an earlier run, deleting it on success."""
        with self._recovery_lock:
            if not self._recovery.exists():
                return False
            logger.info(f"Restoring data from last time from {self._recovery.path}")
            try:
                self._push(self._recovery.read_bytes())
            except Exception as e:
                logger.error(f"Could not push recovery file {self._recovery.path}, keeping it: {e}", exc_info=True)
                return False
            self._recovery.discard()
        self._metrics.inc("recovery_pushes_total")
        logger.info(f"Restored data from last time from {self._recovery.path}")
        return True

    # -------------------------------------------------------------------------
    # Timing & stats
    # -------------------------------------------------------------------------

    def time_stalled(self) -> float:
        """Seconds spent inside flushes."""
        with self._timing_lock:
            return self._time_stalled

    def time_not_stalled(self) -> float:
        """Seconds spent between flushes."""
        with self._timing_lock:
            return self._time_not_stalled

    def stats(self) -> BufferStats:
        with self._lock:
            live_entries = len(self._live)
            estimate = self._estimate
            capacity = self._capacity
            in_flight = self._pushing is not None
            shutdown = self._shutdown
            generations = self._generations
        return BufferStats(
            live_entries=live_entries,
            size_estimate=estimate,
            capacity=capacity,
            flush_in_flight=in_flight,
            shutdown=shutdown,
            generations=generations,
            time_stalled=self.time_stalled(),
            time_not_stalled=self.time_not_stalled(),
        )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def terminate(self) -> int:
        """
        Stop accepting entries and save the live map to the recovery file.

        An in-flight generation is allowed to resolve first. A stale recovery
        file is overwritten; with nothing buffered it is left in place.
        A failed write is logged, not raised.

        Returns:
            Number of entries saved

        Raises:
            InvariantViolation: If called more than once
        """
        with self._lock:
            if self._shutdown:
                logger.error("Shutdown called twice")
                raise InvariantViolation("Shutdown called twice")
            self._shutdown = True
            drained = self._live
            self._live = {}
            self._estimate = 0
            pending = self._pending

        if pending is not None:
            wait([pending])
        self._executor.shutdown(wait=True)

        if not drained:
            return 0

        entries = sorted(drained)
        with self._recovery_lock:
            try:
                written = self._recovery.write(entries)
            except RecoveryWriteFailure as e:
                logger.error(f"Could not store {len(entries)} remaining entries on shutdown: {e}", exc_info=True)
                return 0
        logger.info(f"Stored {len(entries)} remaining entries ({written} bytes) on shutdown to {self._recovery.path}")
        return len(entries)
