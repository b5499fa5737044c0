"""XP3 Tempo - Unpack Worker.

Extracts every entry of an archive into a directory.

Input: archive file
Output: one file per entry under output_dir, at the entry's relative path

Error handling is asymmetric:
- An entry whose output file cannot be created (unsafe name, invalid
  characters for the host filesystem, permissions) is logged and skipped
- An entry whose bytes cannot be read back from the archive is fatal:
  the archive itself is damaged
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from xp3tempo.archive import ArchiveBackend, ArchiveError, default_backend
from xp3tempo.errors import ArchiveStructureError, PipelineErrorCode
from xp3tempo.utils.paths import safe_entry_target

logger = logging.getLogger(__name__)


@dataclass
class UnpackResult:
    """Result of extracting one archive."""

    archive_path: Path
    output_dir: Path
    entry_count: int = 0
    extracted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def unpack_archive(
    archive_path: str | Path,
    output_dir: str | Path,
    backend: ArchiveBackend | None = None,
) -> UnpackResult:
    """Extract an archive into output_dir.

    Args:
        archive_path: Archive to read.
        output_dir: Destination directory (created if missing).
        backend: Archive implementation (default: XP3).

    Returns:
        UnpackResult listing extracted and skipped entry names.

    Raises:
        ArchiveStructureError: If the archive cannot be opened or parsed,
            or an entry's bytes cannot be read.
    """
    archive_path = Path(archive_path)
    output_dir = Path(output_dir)
    backend = backend or default_backend()
    logger.info("Unpacking %s into %s", archive_path, output_dir)

    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveStructureError(
            PipelineErrorCode.ARCHIVE_OPEN_FAILED, f"Cannot create output directory {output_dir}: {e}"
        ) from e

    try:
        stream = open(archive_path, "rb")
    except OSError as e:
        raise ArchiveStructureError(
            PipelineErrorCode.ARCHIVE_OPEN_FAILED, f"Cannot open {archive_path}: {e}"
        ) from e

    with stream:
        try:
            reader = backend.open_archive(stream)
            entries = reader.entries()
        except (ArchiveError, OSError) as e:
            raise ArchiveStructureError(
                PipelineErrorCode.ARCHIVE_OPEN_FAILED, f"Cannot open {archive_path}: {e}"
            ) from e

        result = UnpackResult(archive_path=archive_path, output_dir=output_dir, entry_count=len(entries))

        for name, _info in entries:
            logger.debug("Extracting %s...", name)
            try:
                target = safe_entry_target(output_dir, name)
                target.parent.mkdir(parents=True, exist_ok=True)
                sink = open(target, "wb")
            except (OSError, ValueError) as e:
                logger.error("Cannot create file for entry %r, skipped: %s", name, e)
                result.skipped.append(name)
                continue

            with sink:
                try:
                    reader.unpack(name, sink)
                except (ArchiveError, OSError) as e:
                    raise ArchiveStructureError(
                        PipelineErrorCode.ENTRY_UNPACK_FAILED, f"Cannot extract {name}: {e}"
                    ) from e
            result.extracted.append(name)

    logger.info(
        "Unpack complete: %d of %d entries extracted, %d skipped",
        len(result.extracted),
        result.entry_count,
        len(result.skipped),
    )
    return result
