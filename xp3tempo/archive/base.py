"""XP3 Tempo - Archive capability interface.

The pipeline needs exactly four things from a container format:
enumerate entries, stream one entry out, stream one entry in, finalize.
Anything satisfying these protocols can stand in for the XP3 codec.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import BinaryIO, Protocol


class ArchiveError(Exception):
    """Malformed archive, corrupted entry data, or writer misuse."""


class ProtectionFlag(IntEnum):
    """Entry protection bit as stored in the index."""

    NOT_PROTECTED = 0
    PROTECTED = 1 << 31


class SegmentCompression(IntEnum):
    """Per-segment storage mode."""

    UNCOMPRESSED = 0
    COMPRESSED = 1


class IndexCompression(Enum):
    """Storage mode of the archive index."""

    UNCOMPRESSED = "uncompressed"
    COMPRESSED = "compressed"


class HeaderVersion(Enum):
    """Archive header layout."""

    OLD = "old"
    CURRENT = "current"


@dataclass(frozen=True)
class ArchiveEntryInfo:
    """Metadata of one archive member."""

    name: str
    size: int
    packed_size: int
    timestamp_ms: int | None = None
    protection: ProtectionFlag = ProtectionFlag.NOT_PROTECTED
    segment_compression: SegmentCompression = SegmentCompression.UNCOMPRESSED


class ArchiveReader(Protocol):
    def entries(self) -> list[tuple[str, ArchiveEntryInfo]]:
        """Return the members in index order."""
        ...

    def unpack(self, name: str, sink: BinaryIO) -> int:
        """Stream one member's decoded bytes to sink; return the byte count."""
        ...


class ArchiveEntryWriter(Protocol):
    def write_segment(self, flag: SegmentCompression, data: bytes) -> None: ...

    def finish(self) -> None: ...


class ArchiveWriter(Protocol):
    def enter_file(
        self,
        protection: ProtectionFlag,
        name: str,
        timestamp_ms: int | None = None,
    ) -> ArchiveEntryWriter: ...

    def finish(self) -> None:
        """Write the index and flush; the archive is complete afterwards."""
        ...


class ArchiveBackend(Protocol):
    def open_archive(self, stream: BinaryIO) -> ArchiveReader: ...

    def start_writer(
        self,
        stream: BinaryIO,
        header_version: HeaderVersion = HeaderVersion.CURRENT,
        index_compression: IndexCompression = IndexCompression.COMPRESSED,
    ) -> ArchiveWriter: ...
