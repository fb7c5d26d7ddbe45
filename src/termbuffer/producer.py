"""
Producer-facing API for recording the terms of one crawled page.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from termbuffer.buffer import EntryBuffer
from termbuffer.entries import TermPageEntry
from termbuffer.storage.crawl_state import PageStateTable, PageStatus

logger = logging.getLogger(__name__)


class PageRecorder:
    """
    Records the terms found on a single page.

    The flush check only runs once the whole page has been recorded, never
    midway through it.

    Usage:
        with PageRecorder(buffer, "doc://42", tracker) as page:
            page.set_title("Rivers of the world")
            for offset, word in enumerate(words):
                page.add_term(word, offset)
        # page marked NOT_PUSHED, buffer.maybe_flush() called
    """

    def __init__(
        self,
        buffer: EntryBuffer,
        target: Any,
        tracker: Optional[PageStateTable] = None,
    ):
        self.buffer = buffer
        self.target = target
        self.tracker = tracker
        self.title: Optional[str] = None
        self._entries: dict[TermPageEntry, TermPageEntry] = {}

    def __enter__(self) -> "PageRecorder":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            if self.tracker is not None:
                self.tracker.set_status(str(self.target), PageStatus.FAILED)
            logger.warning(f"Recording of {self.target} failed: {exc_val}")
            return False
        self.finish()
        return False

    @property
    def entries(self) -> list[TermPageEntry]:
        return sorted(self._entries)

    def add_term(
        self,
        term: str,
        position: int,
        fragment: Optional[str] = None,
        relevance: float = 0.0,
    ) -> TermPageEntry:
        """Record one occurrence of ``term`` on this page."""
        entry = self.buffer.record_occurrence(term, self.target, relevance=relevance)
        if self.title is not None and entry.title != self.title:
            entry = self.buffer.set_title(entry, self.title)
        entry = self.buffer.add_position(entry, position, fragment)
        self._entries[entry] = entry
        return entry

    def set_title(self, title: str) -> None:
        """Set the page title on every entry recorded so far and from now on."""
        self.title = title
        for key in list(self._entries):
            self._entries[key] = self.buffer.set_title(key, title)

    def finish(self):
        """Mark the page as buffered and give the buffer a chance to flush."""
        if self.tracker is not None:
            self.tracker.set_status(str(self.target), PageStatus.NOT_PUSHED)
        return self.buffer.maybe_flush()
