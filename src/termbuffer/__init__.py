"""
Termbuffer: buffering and flush layer for a distributed full-text indexer.

Accumulates term occurrence facts found by crawl workers, merges them in
memory and hands them to a downstream index builder as ordered batches,
saving anything undelivered across restarts.
"""

__version__ = "0.1.0"

from termbuffer.entries import (
    EntryType,
    EntryAnnotation,
    TermEntry,
    TermPageEntry,
    InvalidFact,
)
from termbuffer.buffer import (
    EntryBuffer,
    BufferStats,
    FlushOutcome,
    InvariantViolation,
    DeliveryConsistencyError,
    BufferClosedError,
    POSITION_COST,
)
from termbuffer.producer import PageRecorder
from termbuffer.sinks import (
    Sink,
    SinkUnavailable,
    MemorySink,
    DirectorySink,
    push_with_timeout,
)
from termbuffer.config import BufferConfig, load_config
from termbuffer.observability import MetricsCollector, ProcessStats
from termbuffer.storage import (
    RecoveryFile,
    RecoveryWriteFailure,
    PageStatus,
    CrawlStateTracker,
    PageStateTable,
)
from termbuffer.formats import RecordFormatError, encode_entries, read_entries

__all__ = [
    "EntryType",
    "EntryAnnotation",
    "TermEntry",
    "TermPageEntry",
    "InvalidFact",
    # Buffer
    "EntryBuffer",
    "BufferStats",
    "FlushOutcome",
    "InvariantViolation",
    "DeliveryConsistencyError",
    "BufferClosedError",
    "POSITION_COST",
    "PageRecorder",
    # Sinks
    "Sink",
    "SinkUnavailable",
    "MemorySink",
    "DirectorySink",
    "push_with_timeout",
    # Configuration & metrics
    "BufferConfig",
    "load_config",
    "MetricsCollector",
    "ProcessStats",
    # Storage
    "RecoveryFile",
    "RecoveryWriteFailure",
    "PageStatus",
    "CrawlStateTracker",
    "PageStateTable",
    # Formats
    "RecordFormatError",
    "encode_entries",
    "read_entries",
]
