"""
Recovery file for buffered entries that were never delivered.

On shutdown the buffer drains its live entries into a single well-known
file. Its presence on the next start means an earlier process stopped
with undelivered entries; the next flush pushes its contents to the sink
and then removes it.

The file holds nothing but concatenated records (see
``termbuffer.formats.records``), with no header.
"""
from __future__ import annotations

import logging
import os
import struct
from pathlib import Path
from typing import Iterable

from termbuffer.entries import TermEntry
from termbuffer.formats.records import read_entries, write_entries

logger = logging.getLogger(__name__)

DEFAULT_RECOVERY_PATH = "termbuffer.saved.data"


class RecoveryWriteFailure(OSError):
    """Raised when drained entries could not be persisted."""
    pass


class RecoveryFile:
    """
    A single recovery file on local disk.

    Usage:
        recovery = RecoveryFile(Path("termbuffer.saved.data"))
        recovery.write(entries)        # at shutdown

        if recovery.exists():          # on a later run
            sink.push(recovery.read_bytes())
            recovery.discard()
    """

    TEMP_SUFFIX = ".tmp"

    def __init__(self, path: Path | str = DEFAULT_RECOVERY_PATH):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"RecoveryFile({str(self.path)!r})"

    def exists(self) -> bool:
        return self.path.exists()

    def size(self) -> int:
        """Size in bytes, 0 if absent."""
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def write(self, entries: Iterable[TermEntry]) -> int:
        """
        Replace the file with the given entries.

        The file is written under a temporary name, synced, and renamed
        into place, so a reader never observes a partial file.

        Returns:
            Number of bytes in the new file

        Raises:
            RecoveryWriteFailure: if the file could not be written
        """
        tmp_path = self.path.with_name(self.path.name + self.TEMP_SUFFIX)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                written = write_entries(entries, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, struct.error, ValueError, TypeError) as e:
            tmp_path.unlink(missing_ok=True)
            raise RecoveryWriteFailure(f"Could not write recovery file {self.path}: {e}") from e

        logger.debug(f"Wrote {written} bytes to {self.path}")
        return written

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def read_entries(self) -> list[TermEntry]:
        return read_entries(self.path)

    def discard(self) -> bool:
        """Remove the file. Returns True if a file was removed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
