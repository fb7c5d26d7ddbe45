"""
Tests for the recovery file.
"""

import shutil
import struct
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from termbuffer.entries import TermPageEntry
from termbuffer.formats.records import encode_entries
from termbuffer.storage.recovery import (
    DEFAULT_RECOVERY_PATH,
    RecoveryFile,
    RecoveryWriteFailure,
)


@pytest.fixture
def temp_dir():
    """Create temporary directory."""
    path = tempfile.mkdtemp()
    yield Path(path)
    shutil.rmtree(path)


def make_entries():
    a = TermPageEntry.create("alpha", "doc://1", title="One")
    a.put_position(4, "an alpha")
    b = TermPageEntry("beta", 0.0, "doc://2")
    return [a, b]


class TestRecoveryFile:
    """Test RecoveryFile operations."""

    def test_default_path(self):
        """The default file lives in the working directory."""
        assert RecoveryFile().path == Path(DEFAULT_RECOVERY_PATH)

    def test_absent_by_default(self, temp_dir):
        """A fresh path has no recovery file."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        assert not recovery.exists()
        assert recovery.size() == 0
        assert recovery.discard() is False

    def test_write_and_read(self, temp_dir):
        """Written entries read back unchanged."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        entries = make_entries()

        written = recovery.write(entries)

        assert recovery.exists()
        assert written == recovery.size()
        restored = recovery.read_entries()
        assert restored == entries
        assert restored[0].positions == {4: "an alpha"}
        assert restored[0].title == "One"

    def test_file_is_plain_record_log(self, temp_dir):
        """The file holds exactly the concatenated records, no header."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        entries = make_entries()
        recovery.write(entries)
        assert recovery.read_bytes() == encode_entries(entries)

    def test_write_overwrites(self, temp_dir):
        """A plain write replaces earlier content."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        recovery.write(make_entries())
        recovery.write([TermPageEntry("gamma", 0.0, "doc://3")])
        assert [e.subject for e in recovery.read_entries()] == ["gamma"]

    def test_no_temp_file_left(self, temp_dir):
        """The temporary file is renamed away."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        recovery.write(make_entries())
        assert sorted(p.name for p in temp_dir.iterdir()) == ["saved.data"]

    def test_creates_parent_directory(self, temp_dir):
        """Missing parent directories are created."""
        recovery = RecoveryFile(temp_dir / "nested" / "saved.data")
        recovery.write(make_entries())
        assert recovery.exists()

    def test_discard(self, temp_dir):
        """discard removes the file once."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        recovery.write(make_entries())
        assert recovery.discard() is True
        assert not recovery.exists()

    def test_write_failure(self, temp_dir):
        """I/O errors surface as RecoveryWriteFailure and leave no file."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        with patch("termbuffer.storage.recovery.os.fsync", side_effect=OSError("disk full")):
            with pytest.raises(RecoveryWriteFailure, match="disk full"):
                recovery.write(make_entries())
        assert not recovery.exists()
        assert list(temp_dir.iterdir()) == []

    def test_encoding_failure_wrapped(self, temp_dir):
        """Packing errors surface as RecoveryWriteFailure and leave no temp file."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        with patch(
            "termbuffer.storage.recovery.write_entries",
            side_effect=struct.error("argument out of range"),
        ):
            with pytest.raises(RecoveryWriteFailure, match="out of range"):
                recovery.write(make_entries())
        assert list(temp_dir.iterdir()) == []

    def test_wide_offsets_saved(self, temp_dir):
        """Offsets past 32 bits are written and read back."""
        recovery = RecoveryFile(temp_dir / "saved.data")
        entry = TermPageEntry.create("lake", "doc://2", positions={2 ** 31: None})
        recovery.write([entry])
        assert recovery.read_entries()[0].positions == {2 ** 31: None}
