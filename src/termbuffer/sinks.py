"""
Sinks that accept flushed batches of serialized entries.

A sink is the downstream index-ingestion collaborator. It receives a byte
payload of zero or more concatenated records and either makes it durable
or raises.
"""
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class SinkUnavailable(Exception):
    """Raised when a payload could not be handed to the sink."""
    pass


@runtime_checkable
class Sink(Protocol):
    """Downstream consumer of flushed payloads."""

    def push(self, payload: bytes) -> None:
        """Make ``payload`` durable, or raise."""
        ...


def push_with_timeout(sink: Sink, payload: bytes, timeout: Optional[float]) -> None:
    """
    Push a payload, giving up after ``timeout`` seconds.

    A push that times out keeps running in its worker thread; its result
    is discarded.

    Raises:
        SinkUnavailable: If the push did not finish in time
    """
    if timeout is None:
        sink.push(payload)
        return

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sink-push")
    try:
        future = executor.submit(sink.push, payload)
        try:
            future.result(timeout=timeout)
        except FuturesTimeoutError:
            raise SinkUnavailable(f"Sink push exceeded timeout of {timeout}s")
    finally:
        executor.shutdown(wait=False)


class MemorySink:
    """
    Sink that keeps payloads in memory.

    Set ``fail`` to make every push raise SinkUnavailable.
    """

    def __init__(self, fail: bool = False):
        self.payloads: list[bytes] = []
        self.fail = fail
        self._lock = threading.Lock()

    def push(self, payload: bytes) -> None:
        if self.fail:
            raise SinkUnavailable("Memory sink configured to fail")
        with self._lock:
            self.payloads.append(bytes(payload))

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return sum(len(p) for p in self.payloads)


class DirectorySink:
    """
    Sink that spools each payload into its own file.

    File Layout:
        spool_dir/
            batch_000001.bin
            batch_000002.bin

    A batch file only appears under its final name once fully written and
    synced, so a downstream reader can consume any ``batch_*.bin`` it sees.
    """

    BATCH_PREFIX = "batch_"
    BATCH_SUFFIX = ".bin"

    def __init__(self, spool_dir: Path | str):
        self.spool_dir = Path(spool_dir)
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._next = max(self._list_batches(), default=0) + 1

    def _list_batches(self) -> list[int]:
        numbers = []
        for f in self.spool_dir.glob(f"{self.BATCH_PREFIX}*{self.BATCH_SUFFIX}"):
            try:
                numbers.append(int(f.stem.replace(self.BATCH_PREFIX, "")))
            except ValueError:
                pass
        return sorted(numbers)

    def _batch_path(self, number: int) -> Path:
        return self.spool_dir / f"{self.BATCH_PREFIX}{number:06d}{self.BATCH_SUFFIX}"

    def batches(self) -> list[Path]:
        """Paths of all spooled batches, oldest first."""
        return [self._batch_path(n) for n in self._list_batches()]

    def push(self, payload: bytes) -> None:
        with self._lock:
            number = self._next
            self._next += 1

        path = self._batch_path(number)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise SinkUnavailable(f"Could not spool batch to {path}: {e}") from e
        logger.debug(f"Spooled {len(payload)} bytes to {path.name}")
