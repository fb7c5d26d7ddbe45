"""
Serialization formats for term entries.
"""

from termbuffer.formats.records import (
    TermEntryWriter,
    TermEntryReader,
    RecordFormatError,
    encode_entry,
    encode_entries,
    write_entries,
    iter_records,
    read_entries,
)

__all__ = [
    "TermEntryWriter",
    "TermEntryReader",
    "RecordFormatError",
    "encode_entry",
    "encode_entries",
    "write_entries",
    "iter_records",
    "read_entries",
]
