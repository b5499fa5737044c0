"""XP3 Tempo - Transcode Worker.

Tempo-shifts every Ogg file under a working root, in parallel.

Input: a directory tree (operator-supplied or extracted from an archive)
Output: the same tree, each Ogg file replaced in place by its transcoded copy

Per file:
1. Sniff the header; anything that is not an Ogg stream is left untouched
2. Transcode to a freshly created sibling temp_<stem>.*<ext> file
3. On success, atomically rename the sibling over the original
4. On failure, delete the sibling, log, and move on

A failing file never aborts the batch. Only a missing or unreadable root,
or an invalid speed, is fatal.

Failpoints:
- TRANSCODE_BEFORE_REPLACE: After a successful transcode, before the rename
"""

from __future__ import annotations

import logging
import math
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from xp3tempo.config import get_transcode_workers
from xp3tempo.errors import InvalidInputError, TranscodeRootError
from xp3tempo.transcoder import FfmpegTranscoder, TranscodeResult, Transcoder
from xp3tempo.utils.atomic_io import create_sibling_temp, remove_if_exists, replace_atomic
from xp3tempo.utils.failpoints import maybe_fail
from xp3tempo.utils.sniff import is_transcodable_audio

logger = logging.getLogger(__name__)


# --- Result Types ---


class TranscodeOutcome(StrEnum):
    """What happened to one candidate file."""

    SKIPPED_NOT_AUDIO = "skipped-not-audio"
    TRANSCODED = "transcoded"
    FAILED = "failed"


@dataclass
class FileOutcome:
    """Outcome for one candidate file."""

    path: Path
    outcome: TranscodeOutcome
    message: str | None = None


@dataclass
class TranscodeSummary:
    """Aggregate of one transcode pass. Reported, never persisted."""

    root: Path
    speed: float
    outcomes: list[FileOutcome] = field(default_factory=list)
    elapsed_ms: int = 0

    def _count(self, outcome: TranscodeOutcome) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)

    @property
    def transcoded(self) -> int:
        return self._count(TranscodeOutcome.TRANSCODED)

    @property
    def skipped(self) -> int:
        return self._count(TranscodeOutcome.SKIPPED_NOT_AUDIO)

    @property
    def failed(self) -> int:
        return self._count(TranscodeOutcome.FAILED)

    @property
    def processed(self) -> int:
        """Number of eligible audio files a transcode was attempted on."""
        return self.transcoded + self.failed

    @property
    def failed_paths(self) -> list[Path]:
        return [item.path for item in self.outcomes if item.outcome == TranscodeOutcome.FAILED]


# --- Discovery ---


def _ensure_readable_root(root: Path) -> None:
    if not root.is_dir():
        raise TranscodeRootError(str(root), "not a directory")
    try:
        with os.scandir(root):
            pass
    except OSError as e:
        raise TranscodeRootError(str(root), str(e)) from e


def collect_candidates(root: Path) -> list[Path]:
    """Collect every regular file under root.

    Symlinked directories are not followed. Subdirectories that cannot be
    listed are logged and skipped.

    Args:
        root: Working root.

    Returns:
        Files in walk order. Taken as a snapshot before any work starts, so
        sibling temp files created later are never picked up.
    """

    def _on_walk_error(err: OSError) -> None:
        logger.warning("Cannot list %s: %s", err.filename, err)

    candidates: list[Path] = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_on_walk_error):
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_file():
                candidates.append(path)
            else:
                logger.debug("Skipping non-regular entry: %s", path)
    return candidates


# --- Per-file Work ---


def transcode_file(path: Path, speed: float, transcoder: Transcoder) -> FileOutcome:
    """Transcode one file in place if it is an Ogg stream.

    The original is only ever replaced by a complete output; on any failure
    it is left untouched and the sibling output is removed.

    Args:
        path: Candidate file.
        speed: Tempo multiplier.
        transcoder: Transcoder to run.

    Returns:
        FileOutcome for the file. Never raises for per-file problems.
    """
    if not is_transcodable_audio(path):
        return FileOutcome(path, TranscodeOutcome.SKIPPED_NOT_AUDIO)

    logger.info("Processing %s...", path)
    try:
        temp_path = create_sibling_temp(path)
    except OSError as e:
        logger.error("Cannot create temp output next to %s: %s", path, e)
        return FileOutcome(path, TranscodeOutcome.FAILED, str(e))

    try:
        result = transcoder.transcode(path, temp_path, speed)
    except Exception as e:
        # A misbehaving transcoder is still a per-file failure
        result = TranscodeResult(ok=False, message=f"{type(e).__name__}: {e}")

    if not result.ok:
        _discard(temp_path)
        logger.error("Error processing %s: %s", path, result.message or "transcoder failed")
        return FileOutcome(path, TranscodeOutcome.FAILED, result.message)

    try:
        maybe_fail("TRANSCODE_BEFORE_REPLACE")
        replace_atomic(temp_path, path)
    except OSError as e:
        _discard(temp_path)
        logger.error("Error replacing %s with transcoded output: %s", path, e)
        return FileOutcome(path, TranscodeOutcome.FAILED, str(e))

    logger.debug("Transcoded %s", path)
    return FileOutcome(path, TranscodeOutcome.TRANSCODED)


def _discard(temp_path: Path) -> None:
    try:
        remove_if_exists(temp_path)
    except OSError as e:
        logger.error("Failed to remove partial output %s: %s", temp_path, e)


# --- Batch ---


def process_audio_files(
    root: str | Path,
    speed: float,
    transcoder: Transcoder | None = None,
    max_workers: int | None = None,
) -> TranscodeSummary:
    """Transcode every Ogg file under root with a fixed-size worker pool.

    Files are independent; there is no ordering between them. The call
    returns once every worker has finished, even if some files failed.

    Args:
        root: Working root.
        speed: Tempo multiplier, > 0.
        transcoder: Transcoder to use (default: FfmpegTranscoder()).
        max_workers: Pool size (default: XP3TEMPO_WORKERS or CPU count).

    Returns:
        TranscodeSummary with one outcome per regular file.

    Raises:
        InvalidInputError: If speed is not a positive finite number.
        TranscodeRootError: If root is missing or unreadable.
    """
    if not (speed > 0 and math.isfinite(speed)):
        raise InvalidInputError(f"speed must be a positive number, got {speed}")

    root = Path(root)
    _ensure_readable_root(root)

    transcoder = transcoder or FfmpegTranscoder()
    workers = max_workers or get_transcode_workers()
    candidates = collect_candidates(root)
    logger.info("Found %d files under %s (%d workers)", len(candidates), root, workers)

    start = time.monotonic()
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="transcode") as pool:
        outcomes = list(pool.map(lambda path: transcode_file(path, speed, transcoder), candidates))

    summary = TranscodeSummary(
        root=root,
        speed=speed,
        outcomes=outcomes,
        elapsed_ms=int((time.monotonic() - start) * 1000),
    )
    logger.info(
        "Transcode pass complete: %d transcoded, %d failed, %d skipped in %dms",
        summary.transcoded,
        summary.failed,
        summary.skipped,
        summary.elapsed_ms,
    )
    return summary


# --- Standalone Execution ---


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) != 3:
        print(f"Usage: {sys.argv[0]} <directory> <speed>")
        sys.exit(1)

    try:
        result = process_audio_files(sys.argv[1], float(sys.argv[2]))
    except (ValueError, InvalidInputError, TranscodeRootError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Transcoded: {result.transcoded}")
    print(f"Failed: {result.failed}")
    print(f"Skipped: {result.skipped}")
    sys.exit(0)
