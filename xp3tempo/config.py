"""XP3 Tempo - Configuration constants.

Module-level constants with a few environment overrides. No external config
libraries; per-run options are validated by xp3tempo.schemas.RunConfig.
"""

import os
from pathlib import Path

# --- Member sniffing ---

# Ogg page capture pattern; every Ogg stream starts with it
AUDIO_SIGNATURE = b"OggS"
SIGNATURE_LENGTH = len(AUDIO_SIGNATURE)

# --- Naming conventions ---

ARCHIVE_EXTENSION = "xp3"
ARCHIVE_SUFFIX = f".{ARCHIVE_EXTENSION}"
BACKUP_SUFFIX = f".{ARCHIVE_EXTENSION}.bak"

# Prefix of the sibling file a transcode writes before replacing its source.
# A prefix (not a suffix) keeps the extension ffmpeg uses to pick the muxer.
TEMP_PREFIX = "temp_"

# Suffix used for the extraction directory when stripping the archive
# extension would collide with the archive itself
UNPACKED_DIR_SUFFIX = "_unpacked"

# --- Speed factor ---

DEFAULT_SPEED = 1.0

# ffmpeg's atempo filter is portable only within this range per stage
ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0

# --- XP3 output ---

XP3_MINOR_VERSION = 1

# Files are streamed into uncompressed segments of at most this many bytes
PACK_SEGMENT_SIZE = 16 * 1024 * 1024

# Buffer size for streaming segment bytes in and out of archives
COPY_CHUNK_SIZE = 1024 * 1024


def get_ffmpeg_binary() -> str:
    """Get the ffmpeg executable from XP3TEMPO_FFMPEG or use "ffmpeg" on PATH."""
    return os.environ.get("XP3TEMPO_FFMPEG") or "ffmpeg"


def _get_positive_int(name: str, default: int | None) -> int | None:
    """Read a positive integer from the environment.

    Invalid or non-positive values fall back to the default.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        Parsed integer or the default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def get_transcode_timeout() -> float | None:
    """Get the per-file transcode timeout in seconds.

    Environment variable XP3TEMPO_TRANSCODE_TIMEOUT enables it. Default is
    no timeout: a transcode runs to completion.

    Returns:
        Timeout in seconds, or None.
    """
    env_val = os.environ.get("XP3TEMPO_TRANSCODE_TIMEOUT")
    if env_val:
        try:
            timeout = float(env_val)
            if timeout > 0:
                return timeout
        except ValueError:
            pass
    return None


def get_transcode_workers() -> int:
    """Get the transcode worker pool size.

    XP3TEMPO_WORKERS overrides the default of one worker per CPU.
    Read at call time so tests and callers can adjust the environment.
    """
    return _get_positive_int("XP3TEMPO_WORKERS", None) or os.cpu_count() or 1


def get_scratch_parent() -> Path | None:
    """Get the parent directory for scratch extraction, if overridden.

    XP3TEMPO_SCRATCH_DIR points extraction at a volume with enough space;
    unset means the system temp directory.
    """
    env_val = os.environ.get("XP3TEMPO_SCRATCH_DIR")
    return Path(env_val) if env_val else None


# Log level used by the CLI when --log-level is not given
LOG_LEVEL = os.environ.get("XP3TEMPO_LOG_LEVEL", "INFO").upper()
