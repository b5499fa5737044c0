"""XP3 Tempo - Archive staging pipeline.

Drives one run through its states:

    start -> resolved -> transcoded -> (repacked | skipped) -> done

- start -> resolved: a directory input is the working root as-is; an
  archive input is extracted (services.worker_unpack)
- resolved -> transcoded: Ogg members are tempo-shifted in place
  (services.worker_transcode); skipped entirely when speed == 1.0
- transcoded -> skipped: no_pack stops here, leaving the working root on disk
- transcoded -> repacked: an archive input is first renamed to
  <stem>.xp3.bak, then a fresh archive is written at <stem>.xp3
  (services.worker_pack)

There are no retries. A failure in any state is fatal and raised to the
caller; per-entry extraction failures and per-file transcode failures are
not failures of the state and are only logged.

Rollback: the backup is never deleted. If repacking fails, the backup is the
only complete copy of the original archive and is left for the operator;
nothing is renamed back automatically.

Working root lifecycle:
- operator-supplied directory: never deleted
- archive input with packing: extracted into a scratch directory that is
  removed on every exit path
- archive input with no_pack: extracted next to the archive ({stem}/) and
  kept, since it is the run's output

Failpoints:
- PACK_AFTER_BACKUP: After the original was renamed, before repacking
"""

from __future__ import annotations

import logging
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from xp3tempo.config import DEFAULT_SPEED, get_scratch_parent
from xp3tempo.errors import InvalidInputError, PipelineErrorCode, RepackError
from xp3tempo.schemas import RunConfig
from xp3tempo.utils.failpoints import maybe_fail
from xp3tempo.utils.paths import backup_archive_path, output_archive_path, unpack_dir_path

if TYPE_CHECKING:
    from services.worker_pack.run import PackResult
    from services.worker_transcode.run import TranscodeSummary
    from services.worker_unpack.run import UnpackResult
    from xp3tempo.archive import ArchiveBackend
    from xp3tempo.transcoder import Transcoder

logger = logging.getLogger(__name__)


# --- States ---


class PipelineState(StrEnum):
    START = "start"
    RESOLVED = "resolved"
    TRANSCODED = "transcoded"
    REPACKED = "repacked"
    SKIPPED = "skipped"
    DONE = "done"


# --- Result Types ---


@dataclass
class PipelineResult:
    """Everything a run did, for reporting."""

    input_path: Path
    speed: float
    no_pack: bool
    working_root: Path | None = None
    scratch: bool = False
    states: list[PipelineState] = field(default_factory=list)
    unpack: UnpackResult | None = None
    transcode: TranscodeSummary | None = None
    pack: PackResult | None = None
    backup_path: Path | None = None
    output_path: Path | None = None

    @property
    def packed_count(self) -> int:
        return self.pack.entry_count if self.pack else 0


def _enter(result: PipelineResult, state: PipelineState) -> None:
    result.states.append(state)
    logger.debug("Pipeline state: %s", state)


# --- Validation ---


def validate_run_config(input_path: str | Path, speed: float, no_pack: bool) -> RunConfig:
    """Validate run options before anything on disk is touched.

    Raises:
        InvalidInputError: If the input is missing or speed is not > 0.
    """
    try:
        return RunConfig(input=Path(input_path), speed=speed, no_pack=no_pack)
    except ValidationError as e:
        reasons = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise InvalidInputError(reasons) from e


# --- Stages ---


def _resolve_working_root(
    config: RunConfig,
    result: PipelineResult,
    stack: ExitStack,
    backend: ArchiveBackend | None,
) -> Path:
    if not config.input_is_archive:
        logger.info("Using directory %s as working root", config.input)
        return config.input

    from services.worker_unpack.run import unpack_archive

    if config.no_pack:
        target = unpack_dir_path(config.input)
        if target.exists():
            logger.warning("Extracting into existing directory %s", target)
    else:
        scratch_parent = get_scratch_parent()
        if scratch_parent is not None:
            scratch_parent.mkdir(parents=True, exist_ok=True)
        target = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="xp3tempo-", dir=scratch_parent)))
        result.scratch = True

    result.unpack = unpack_archive(config.input, target, backend=backend)
    return target


def _run_transcode(
    config: RunConfig,
    working_root: Path,
    transcoder: Transcoder | None,
) -> TranscodeSummary | None:
    if config.speed == 1.0:
        logger.info("Speed factor is 1.0, skipping transcode pass")
        return None

    from services.worker_transcode.run import process_audio_files

    logger.info("Transcoding audio under %s at %sx", working_root, config.speed)
    return process_audio_files(working_root, config.speed, transcoder=transcoder)


def _backup_original(input_path: Path) -> Path:
    backup_path = backup_archive_path(input_path)
    if backup_path.exists():
        logger.warning("Overwriting existing backup %s", backup_path)
    logger.info("Backing up original archive to %s", backup_path)
    try:
        input_path.replace(backup_path)
    except OSError as e:
        raise RepackError(
            PipelineErrorCode.BACKUP_FAILED, f"Cannot rename {input_path} to {backup_path}: {e}"
        ) from e
    return backup_path


# --- Entry Point ---


def process_archive(
    input_path: str | Path,
    speed: float = DEFAULT_SPEED,
    no_pack: bool = False,
    *,
    transcoder: Transcoder | None = None,
    backend: ArchiveBackend | None = None,
) -> PipelineResult:
    """Run the unpack -> transcode -> repack pipeline on one input.

    Args:
        input_path: XP3 archive, or a directory of files.
        speed: Tempo multiplier, > 0. 1.0 skips the transcode pass.
        no_pack: Stop after transcoding; do not back up or repack.
        transcoder: Transcoder to use (default: ffmpeg).
        backend: Archive implementation (default: XP3).

    Returns:
        PipelineResult describing every stage that ran.

    Raises:
        InvalidInputError: Before any mutation, for a bad input or speed.
        ArchiveStructureError: If the archive cannot be opened or read.
        TranscodeRootError: If the working root cannot be read.
        RepackError: If backup, archive creation, entry write or finalize fails.
    """
    config = validate_run_config(input_path, speed, no_pack)
    result = PipelineResult(input_path=config.input, speed=config.speed, no_pack=config.no_pack)
    input_is_archive = config.input_is_archive
    logger.info("Processing %s", config.input)
    _enter(result, PipelineState.START)

    with ExitStack() as stack:
        working_root = _resolve_working_root(config, result, stack, backend)
        result.working_root = working_root
        _enter(result, PipelineState.RESOLVED)

        result.transcode = _run_transcode(config, working_root, transcoder)
        _enter(result, PipelineState.TRANSCODED)

        if config.no_pack:
            logger.info("Audio processing complete, not repacking; files left in %s", working_root)
            _enter(result, PipelineState.SKIPPED)
            _enter(result, PipelineState.DONE)
            return result

        if input_is_archive:
            result.backup_path = _backup_original(config.input)
            maybe_fail("PACK_AFTER_BACKUP")

        from services.worker_pack.run import pack_directory

        output_path = output_archive_path(config.input)
        result.pack = pack_directory(working_root, output_path, backend=backend)
        result.output_path = output_path
        _enter(result, PipelineState.REPACKED)

    logger.info("Repacked %s: %d files", result.output_path, result.packed_count)
    _enter(result, PipelineState.DONE)
    return result
