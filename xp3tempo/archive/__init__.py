"""XP3 Tempo - Archive capability interface and the XP3 implementation."""

from xp3tempo.archive.base import (
    ArchiveBackend,
    ArchiveEntryInfo,
    ArchiveError,
    ArchiveReader,
    ArchiveWriter,
    HeaderVersion,
    IndexCompression,
    ProtectionFlag,
    SegmentCompression,
)
from xp3tempo.archive.xp3 import XP3Backend, XP3Reader, XP3Writer


def default_backend() -> ArchiveBackend:
    """Return the backend used when a caller does not supply one."""
    return XP3Backend()


__all__ = [
    "ArchiveBackend",
    "ArchiveEntryInfo",
    "ArchiveError",
    "ArchiveReader",
    "ArchiveWriter",
    "HeaderVersion",
    "IndexCompression",
    "ProtectionFlag",
    "SegmentCompression",
    "XP3Backend",
    "XP3Reader",
    "XP3Writer",
    "default_backend",
]
