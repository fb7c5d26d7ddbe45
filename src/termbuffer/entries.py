"""
Term entry model.

A term entry asserts that a subject term occurs in some target, with a
relevance weight. Entries are totally ordered by (subject, relevance,
subtype tiebreak) so a generation of buffered entries can be written out
deterministically.

Key design decisions:
- Frozen core: subject, relevance and target define identity and never change
- Mutable annotation cell: the late-bound title lives outside the identity
- Positions are collected in place but excluded from equality and ordering
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional


class InvalidFact(ValueError):
    """Raised when an entry is constructed from malformed input."""
    pass


# Offsets are serialized as signed 64-bit integers
MIN_OFFSET = -(2 ** 63)
MAX_OFFSET = 2 ** 63 - 1


def check_offset(offset: Any) -> int:
    """Return ``offset`` if it can be stored as a position, else raise InvalidFact."""
    if isinstance(offset, bool) or not isinstance(offset, int):
        raise InvalidFact(f"position offset must be an int, got {type(offset).__name__}")
    if not MIN_OFFSET <= offset <= MAX_OFFSET:
        raise InvalidFact(f"position offset {offset} out of range")
    return offset


class EntryType(IntEnum):
    """Entry subtype tag, written as the first payload byte of a record."""
    PAGE = 1


# =============================================================================
# Base Entry
# =============================================================================

@functools.total_ordering
@dataclass(frozen=True)
class TermEntry:
    """
    Abstract fact about a subject term.

    Attributes:
        subject: The indexed term
        relevance: Weight of this occurrence
    """
    subject: str
    relevance: float = 0.0

    def __post_init__(self):
        if self.subject is None:
            raise InvalidFact("can't have a null subject")

    @property
    def entry_type(self) -> EntryType:
        raise NotImplementedError

    def _tiebreak(self) -> tuple:
        return ()

    def sort_key(self) -> tuple:
        return (self.subject, self.relevance) + self._tiebreak()

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, TermEntry):
            return NotImplemented
        return self.sort_key() < other.sort_key()


# =============================================================================
# Page Entry
# =============================================================================

@dataclass
class EntryAnnotation:
    """Mutable cell for fields that may be set after an entry is created."""
    title: Optional[str] = None


@dataclass(frozen=True)
class TermPageEntry(TermEntry):
    """
    A TermEntry that associates a subject term with a target document.

    The target is an opaque reference: anything with a stable ``str()``
    form. Positions map an offset within the document to an optional
    fragment of surrounding text.

    Example:
        entry = TermPageEntry("river", 0.0, "doc://42")
        entry.put_position(17, "...the river bank...")
        entry.size_estimate()  # len("doc://42") + len("river") + 4
    """
    target: Any = None
    positions: dict[int, Optional[str]] = field(
        default_factory=dict, compare=False, repr=False
    )
    annotation: EntryAnnotation = field(
        default_factory=EntryAnnotation, compare=False, repr=False
    )

    def __post_init__(self):
        super().__post_init__()
        if self.target is None:
            raise InvalidFact("can't have a null target")
        for offset in self.positions:
            check_offset(offset)

    @classmethod
    def create(
        cls,
        subject: str,
        target: Any,
        relevance: float = 0.0,
        positions: Optional[dict[int, Optional[str]]] = None,
        title: Optional[str] = None,
    ) -> "TermPageEntry":
        """Build an entry, optionally with initial positions and a title."""
        return cls(
            subject=subject,
            relevance=relevance,
            target=target,
            positions=dict(positions) if positions else {},
            annotation=EntryAnnotation(title=title),
        )

    @property
    def entry_type(self) -> EntryType:
        return EntryType.PAGE

    @property
    def title(self) -> Optional[str]:
        return self.annotation.title

    def _tiebreak(self) -> tuple:
        return (str(self.target),)

    def put_position(self, offset: int, fragment: Optional[str] = None) -> None:
        """Record an offset; an existing fragment is kept if none is given."""
        check_offset(offset)
        if fragment is None and offset in self.positions:
            return
        self.positions[offset] = fragment

    def size_estimate(self) -> int:
        """
        Approximate serialized size in bytes.

        Only used to decide when to flush, so it need not be exact.
        """
        s = len(str(self.target))
        s += 0 if self.title is None else len(self.title)
        s += len(self.subject)
        s += len(self.positions) * 4
        return s
