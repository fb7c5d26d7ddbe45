"""
Binary record codec for term entries.

Each entry is written as a self-delimiting record so that a plain
concatenation of records (a flush payload, or the recovery file) can be
split back into entries without any file-level header or framing.

Record Format (little-endian):
    [4 bytes] body_length (bytes after this field, including checksum)
    [1 byte]  entry_type (PAGE=1)
    [4+N]     subject (uint32 length + UTF-8)
    [8 bytes] relevance (float64)
    [4+N]     target (uint32 length + UTF-8 of str(target))
    [1 byte]  has_title, then [4+N] title if set
    [4 bytes] position_count
    For each position, ascending by offset:
        [8 bytes] offset (int64)
        [1 byte]  has_fragment, then [4+N] fragment if set
    [4 bytes] checksum (CRC32 of everything before it)
"""

from __future__ import annotations

import struct
import zlib
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional, Union

from termbuffer.entries import EntryType, TermEntry, TermPageEntry


LENGTH_FORMAT = "<I"
LENGTH_SIZE = struct.calcsize(LENGTH_FORMAT)
CHECKSUM_SIZE = 4
OFFSET_FORMAT = "<q"


class RecordFormatError(ValueError):
    """Raised when a record log cannot be decoded."""
    pass


def _pack_str(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack(LENGTH_FORMAT, len(data)) + data


def _pack_optional(value: Optional[str]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + _pack_str(value)


class TermEntryWriter:
    """Serializes entries into records."""

    def encode(self, entry: TermEntry) -> bytes:
        """Serialize a single entry to one complete record."""
        if not isinstance(entry, TermPageEntry):
            raise TypeError(f"Unsupported entry type: {type(entry).__name__}")

        parts = [
            struct.pack("<B", entry.entry_type),
            _pack_str(entry.subject),
            struct.pack("<d", entry.relevance),
            _pack_str(str(entry.target)),
            _pack_optional(entry.title),
            struct.pack("<I", len(entry.positions)),
        ]
        for offset in sorted(entry.positions):
            parts.append(struct.pack(OFFSET_FORMAT, offset))
            parts.append(_pack_optional(entry.positions[offset]))

        body = b"".join(parts)
        data = struct.pack(LENGTH_FORMAT, len(body) + CHECKSUM_SIZE) + body
        checksum = zlib.crc32(data) & 0xFFFFFFFF
        return data + struct.pack("<I", checksum)

    def write(self, entry: TermEntry, stream: BinaryIO) -> int:
        """Write one record to a stream, returning the bytes written."""
        record = self.encode(entry)
        stream.write(record)
        return len(record)


class _Cursor:
    """Bounds-checked reader over a single record body."""

    def __init__(self, data: bytes, offset: int, end: int):
        self.data = data
        self.pos = offset
        self.end = end

    def take(self, size: int) -> bytes:
        if self.pos + size > self.end:
            raise RecordFormatError(f"Record field overruns record end at offset {self.pos}")
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    def string(self) -> str:
        length = self.unpack(LENGTH_FORMAT)
        return self.take(length).decode("utf-8")

    def optional(self) -> Optional[str]:
        flag = self.unpack("<B")
        if flag == 0:
            return None
        return self.string()


class TermEntryReader:
    """Decodes records back into entries."""

    def decode(self, data: bytes, offset: int = 0) -> tuple[TermEntry, int]:
        """
        Decode one record starting at ``offset``.

        Returns:
            Tuple of (entry, bytes_consumed)
        """
        if offset + LENGTH_SIZE > len(data):
            raise RecordFormatError(f"Truncated record header at offset {offset}")

        body_length = struct.unpack_from(LENGTH_FORMAT, data, offset)[0]
        record_end = offset + LENGTH_SIZE + body_length
        if body_length < CHECKSUM_SIZE or record_end > len(data):
            raise RecordFormatError(f"Truncated record at offset {offset}")

        checksum_offset = record_end - CHECKSUM_SIZE
        stored = struct.unpack_from("<I", data, checksum_offset)[0]
        computed = zlib.crc32(data[offset:checksum_offset]) & 0xFFFFFFFF
        if stored != computed:
            raise RecordFormatError(f"Record checksum mismatch at offset {offset}")

        cursor = _Cursor(data, offset + LENGTH_SIZE, checksum_offset)
        try:
            entry_type = EntryType(cursor.unpack("<B"))
        except ValueError as e:
            raise RecordFormatError(f"Unknown entry type at offset {offset}") from e

        subject = cursor.string()
        relevance = cursor.unpack("<d")
        target = cursor.string()
        title = cursor.optional()
        count = cursor.unpack("<I")
        positions = {}
        for _ in range(count):
            pos = cursor.unpack(OFFSET_FORMAT)
            positions[pos] = cursor.optional()

        if cursor.pos != checksum_offset:
            raise RecordFormatError(f"Trailing bytes in record at offset {offset}")

        entry = TermPageEntry.create(
            subject,
            target,
            relevance=relevance,
            positions=positions,
            title=title,
        )
        return entry, record_end - offset


_writer = TermEntryWriter()
_reader = TermEntryReader()


def encode_entry(entry: TermEntry) -> bytes:
    """Serialize a single entry."""
    return _writer.encode(entry)


def write_entries(entries: Iterable[TermEntry], stream: BinaryIO) -> int:
    """Write entries to a stream in iteration order, returning bytes written."""
    total = 0
    for entry in entries:
        total += _writer.write(entry, stream)
    return total


def encode_entries(entries: Iterable[TermEntry]) -> bytes:
    """Serialize entries into one contiguous payload."""
    buf = BytesIO()
    write_entries(entries, buf)
    return buf.getvalue()


def iter_records(data: bytes) -> Iterator[TermEntry]:
    """Yield entries from a concatenated record log."""
    offset = 0
    while offset < len(data):
        entry, consumed = _reader.decode(data, offset)
        offset += consumed
        yield entry


def read_entries(source: Union[bytes, Path, BinaryIO]) -> list[TermEntry]:
    """
    Decode every record in a log.

    Args:
        source: Raw bytes, a file path, or a binary stream
    """
    if isinstance(source, Path):
        data = source.read_bytes()
    elif isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        data = source.read()
    return list(iter_records(data))
