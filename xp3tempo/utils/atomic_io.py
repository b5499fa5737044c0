"""XP3 Tempo - Atomic I/O utilities.

Implements the replace-on-success rule used by the transcode stage:
1. The producer writes a sibling temp file in the same directory
2. Only after it reports success is the temp renamed over the final path

The final path therefore holds either the old complete bytes or the new
complete bytes, never a partial write.

Failpoints:
- ATOMIC_REPLACE_BEFORE_RENAME: After the producer finished, before rename
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO

from xp3tempo.config import TEMP_PREFIX
from xp3tempo.utils.failpoints import maybe_fail

logger = logging.getLogger(__name__)


def create_sibling_temp(path: Path) -> Path:
    """Create an empty, uniquely named temp file next to path.

    The file is created exclusively, so it never aliases an existing file
    (including one that happens to be named temp_<name>) or another
    worker's temp file. The extension is kept for ffmpeg's muxer choice.

    Args:
        path: File the temp output will eventually replace.

    Returns:
        Path: {parent}/temp_{stem}.<random>{suffix}, owned by the caller.

    Raises:
        OSError: If the file cannot be created.
    """
    fd, temp_name = tempfile.mkstemp(prefix=f"{TEMP_PREFIX}{path.stem}.", suffix=path.suffix, dir=path.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    # mkstemp creates 0600; the replacement keeps the original's mode
    try:
        shutil.copymode(path, temp_path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    return temp_path


def replace_atomic(temp_path: str | Path, final_path: str | Path) -> None:
    """Atomically replace final_path with temp_path.

    Both paths must be on the same filesystem (siblings in practice).

    Args:
        temp_path: Completed temporary file.
        final_path: Path to replace.

    Raises:
        OSError: If the rename fails. temp_path is left for the caller to clean up.
    """
    temp_path = Path(temp_path)
    final_path = Path(final_path)

    maybe_fail("ATOMIC_REPLACE_BEFORE_RENAME")

    # Atomic rename (POSIX guarantees atomicity, Windows replaces in place)
    os.replace(temp_path, final_path)

    # Best-effort fsync on directory for rename durability
    _fsync_directory(final_path.parent)


def remove_if_exists(path: str | Path) -> bool:
    """Remove a file if present.

    Args:
        path: File to remove.

    Returns:
        True if a file was removed, False if there was nothing to remove.

    Raises:
        OSError: If the file exists but cannot be removed.
    """
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    logger.debug("Removed %s", path)
    return True


def sync_stream(stream: BinaryIO) -> None:
    """Flush a writable file object and best-effort fsync it.

    Args:
        stream: Open binary file object.

    Raises:
        OSError: If the flush fails.
    """
    stream.flush()
    try:
        os.fsync(stream.fileno())
    except (OSError, AttributeError, ValueError):
        # In-memory streams have no descriptor; fsync is best-effort
        pass


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory.

    This helps ensure rename durability on some filesystems.
    Silently ignores errors as this is best-effort.

    Args:
        dir_path: Directory path to sync.
    """
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        # O_DIRECTORY may not be available on all platforms
        # or fsync on directory may fail - this is best-effort
        pass
