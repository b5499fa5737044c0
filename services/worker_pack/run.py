"""XP3 Tempo - Pack Worker.

Packs every regular file under a directory into a fresh archive.

Input: working root
Output: archive at output_path, one NOT_PROTECTED entry per regular file,
        stored as UNCOMPRESSED segments, index compressed

Entry names are paths relative to the root joined with "/" on every
platform. Entries are added in directory enumeration order; no sorting.

Any failure is fatal and the partial archive is removed. The caller keeps
whatever backup it made before calling in.

Failpoints:
- PACK_AFTER_ENTRY: After each entry is registered
- PACK_BEFORE_FINALIZE: After all entries, before the index is written
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from xp3tempo.archive import (
    ArchiveBackend,
    ArchiveError,
    ArchiveWriter,
    HeaderVersion,
    IndexCompression,
    ProtectionFlag,
    SegmentCompression,
    default_backend,
)
from xp3tempo.config import PACK_SEGMENT_SIZE
from xp3tempo.errors import PipelineErrorCode, RepackError
from xp3tempo.utils.atomic_io import remove_if_exists, sync_stream
from xp3tempo.utils.failpoints import maybe_fail
from xp3tempo.utils.paths import entry_name_for

logger = logging.getLogger(__name__)


@dataclass
class PackResult:
    """Result of packing one directory."""

    root: Path
    output_path: Path
    entry_names: list[str] = field(default_factory=list)

    @property
    def entry_count(self) -> int:
        return len(self.entry_names)


def _add_file(writer: ArchiveWriter, path: Path, name: str, timestamp_ms: int) -> None:
    with open(path, "rb") as src:
        entry = writer.enter_file(ProtectionFlag.NOT_PROTECTED, name, timestamp_ms)
        chunk = src.read(PACK_SEGMENT_SIZE)
        entry.write_segment(SegmentCompression.UNCOMPRESSED, chunk)
        while len(chunk) == PACK_SEGMENT_SIZE:
            chunk = src.read(PACK_SEGMENT_SIZE)
            if not chunk:
                break
            entry.write_segment(SegmentCompression.UNCOMPRESSED, chunk)
        entry.finish()


def add_all_files(
    writer: ArchiveWriter,
    root: Path,
    dir_path: Path,
    exclude: Path | None = None,
) -> list[str]:
    """Register every regular file under dir_path, recursively.

    Args:
        writer: Open archive writer.
        root: Working root; entry names are relative to it.
        dir_path: Directory to walk.
        exclude: A path never to pack (the archive being written).

    Returns:
        Entry names in the order they were added.

    Raises:
        RepackError: If a directory cannot be listed or a file cannot be added.
    """
    names: list[str] = []
    try:
        with os.scandir(dir_path) as it:
            dir_entries = list(it)
    except OSError as e:
        raise RepackError(PipelineErrorCode.ENTRY_WRITE_FAILED, f"Cannot list {dir_path}: {e}") from e

    for dir_entry in dir_entries:
        path = Path(dir_entry.path)
        try:
            if dir_entry.is_dir(follow_symlinks=False):
                names.extend(add_all_files(writer, root, path, exclude))
                continue
            if not dir_entry.is_file():
                logger.debug("Skipping non-regular entry: %s", path)
                continue
            if exclude is not None and path == exclude:
                continue

            name = entry_name_for(path, root)
            timestamp_ms = max(0, dir_entry.stat().st_mtime_ns // 1_000_000)
            _add_file(writer, path, name, timestamp_ms)
        except (ArchiveError, OSError) as e:
            raise RepackError(PipelineErrorCode.ENTRY_WRITE_FAILED, f"Cannot add {path}: {e}") from e

        logger.debug("Packed %s", name)
        names.append(name)
        maybe_fail("PACK_AFTER_ENTRY")

    return names


def pack_directory(
    root: str | Path,
    output_path: str | Path,
    backend: ArchiveBackend | None = None,
) -> PackResult:
    """Pack root into a new archive at output_path.

    Args:
        root: Directory to pack.
        output_path: Archive to create (overwritten if present).
        backend: Archive implementation (default: XP3).

    Returns:
        PackResult with the names of all packed entries.

    Raises:
        RepackError: If the archive cannot be created, an entry cannot be
            written, or the archive cannot be finalized.
    """
    root = Path(root).absolute()
    output_path = Path(output_path).absolute()
    backend = backend or default_backend()
    logger.info("Packing %s into %s", root, output_path)

    try:
        stream = open(output_path, "wb")
    except OSError as e:
        raise RepackError(
            PipelineErrorCode.ARCHIVE_CREATE_FAILED, f"Cannot create {output_path}: {e}"
        ) from e

    try:
        with stream:
            try:
                writer = backend.start_writer(stream, HeaderVersion.CURRENT, IndexCompression.COMPRESSED)
            except (ArchiveError, OSError) as e:
                raise RepackError(
                    PipelineErrorCode.ARCHIVE_CREATE_FAILED, f"Cannot start {output_path}: {e}"
                ) from e

            names = add_all_files(writer, root, root, exclude=output_path)

            maybe_fail("PACK_BEFORE_FINALIZE")
            try:
                writer.finish()
                sync_stream(stream)
            except (ArchiveError, OSError) as e:
                raise RepackError(
                    PipelineErrorCode.FINALIZE_FAILED, f"Cannot finalize {output_path}: {e}"
                ) from e
    except RepackError:
        _discard_partial(output_path)
        raise
    except OSError as e:
        # Closing the stream flushes buffered segment data
        _discard_partial(output_path)
        raise RepackError(PipelineErrorCode.FINALIZE_FAILED, f"Cannot close {output_path}: {e}") from e

    result = PackResult(root=root, output_path=output_path, entry_names=names)
    logger.info("Packed %d files into %s", result.entry_count, output_path)
    return result


def _discard_partial(output_path: Path) -> None:
    try:
        if remove_if_exists(output_path):
            logger.warning("Removed incomplete archive %s", output_path)
    except OSError as e:
        logger.error("Failed to remove incomplete archive %s: %s", output_path, e)
