"""
Crawl state tracking for pages whose terms pass through the buffer.

A page moves QUEUED -> NOT_PUSHED once its terms are in the buffer, and
NOT_PUSHED -> SUCCEEDED once a flush carrying them has been delivered.
Pages left NOT_PUSHED by a dead process are moved back to QUEUED on the
next start so they get crawled again.

PageStateTable is a small in-process implementation backed by a Polars
frame, persisted as Parquet. Production deployments can supply any object
with an ``advance_status`` method instead.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import polars as pl

logger = logging.getLogger(__name__)


class PageStatus(Enum):
    """Lifecycle of a crawled page with respect to index delivery."""
    QUEUED = "queued"          # Waiting to be crawled
    NOT_PUSHED = "not_pushed"  # Terms buffered, not yet delivered
    SUCCEEDED = "succeeded"    # Terms delivered to the index
    FAILED = "failed"          # Crawl or parse failed


@runtime_checkable
class CrawlStateTracker(Protocol):
    """Anything that can bulk-move pages from one status to another."""

    def advance_status(self, from_status: PageStatus, to_status: PageStatus) -> int:
        """Move every page in ``from_status`` to ``to_status``; return the count."""
        ...


STATE_SCHEMA = {
    "uri": pl.Utf8,
    "status": pl.Utf8,
    "updated_at": pl.Datetime("us"),
}


class PageStateTable:
    """
    Thread-safe page status table.

    Example:
        table = PageStateTable()
        table.enqueue("doc://1")
        table.set_status("doc://1", PageStatus.NOT_PUSHED)
        table.advance_status(PageStatus.NOT_PUSHED, PageStatus.SUCCEEDED)
        table.save(Path("crawl_state.parquet"))
    """

    def __init__(self, df: Optional[pl.DataFrame] = None):
        self._df = df if df is not None else pl.DataFrame(schema=STATE_SCHEMA)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return self._df.height

    def _row(self, uri: str, status: PageStatus, now: datetime) -> pl.DataFrame:
        return pl.DataFrame(
            {"uri": [uri], "status": [status.value], "updated_at": [now]},
            schema=STATE_SCHEMA,
        )

    def _contains(self, uri: str) -> bool:
        return self._df.filter(pl.col("uri") == uri).height > 0

    def enqueue(self, uri: str) -> bool:
        """Add a page as QUEUED. Returns False if the page is already known."""
        uri = str(uri)
        with self._lock:
            if self._contains(uri):
                return False
            self._df = pl.concat([self._df, self._row(uri, PageStatus.QUEUED, datetime.now())])
            return True

    def set_status(self, uri: str, status: PageStatus) -> None:
        """Set a single page's status, adding the page if it is unknown."""
        uri = str(uri)
        now = datetime.now()
        with self._lock:
            if not self._contains(uri):
                self._df = pl.concat([self._df, self._row(uri, status, now)])
                return
            match = pl.col("uri") == uri
            self._df = self._df.with_columns(
                pl.when(match).then(pl.lit(status.value)).otherwise(pl.col("status")).alias("status"),
                pl.when(match).then(pl.lit(now)).otherwise(pl.col("updated_at")).alias("updated_at"),
            )

    def status_of(self, uri: str) -> Optional[PageStatus]:
        with self._lock:
            rows = self._df.filter(pl.col("uri") == str(uri))
        if rows.height == 0:
            return None
        return PageStatus(rows["status"][0])

    def count(self, status: PageStatus) -> int:
        with self._lock:
            return self._df.filter(pl.col("status") == status.value).height

    def pages(self, status: PageStatus) -> list[str]:
        with self._lock:
            return self._df.filter(pl.col("status") == status.value)["uri"].sort().to_list()

    def advance_status(self, from_status: PageStatus, to_status: PageStatus) -> int:
        """
        Move every page in ``from_status`` to ``to_status``.

        The frame is replaced in one step under the table lock, so readers
        see either all or none of the transition.
        """
        now = datetime.now()
        with self._lock:
            match = pl.col("status") == from_status.value
            moved = self._df.filter(match).height
            if moved:
                self._df = self._df.with_columns(
                    pl.when(match).then(pl.lit(to_status.value)).otherwise(pl.col("status")).alias("status"),
                    pl.when(match).then(pl.lit(now)).otherwise(pl.col("updated_at")).alias("updated_at"),
                )
        if moved:
            logger.debug(f"Moved {moved} pages from {from_status.value} to {to_status.value}")
        return moved

    def to_frame(self) -> pl.DataFrame:
        with self._lock:
            return self._df.clone()

    def save(self, path: Path | str) -> None:
        """Persist the table as Parquet."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._df.write_parquet(path)

    @classmethod
    def load(cls, path: Path | str) -> "PageStateTable":
        """Load a table saved with ``save``; a missing file yields an empty table."""
        path = Path(path)
        if not path.exists():
            return cls()
        df = pl.read_parquet(path).cast(STATE_SCHEMA)
        return cls(df)
