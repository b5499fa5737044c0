"""XP3 Tempo - Audio transcoder capability.

The transcode itself is a black box behind the Transcoder protocol. The
default implementation shells out to ffmpeg once per file; tests and other
callers can pass any object with a matching transcode() method.

Dependencies:
- Requires ffmpeg installed and in PATH (or XP3TEMPO_FFMPEG)
"""

from __future__ import annotations

import logging
import math
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from xp3tempo.config import ATEMPO_MAX, ATEMPO_MIN, get_ffmpeg_binary, get_transcode_timeout

logger = logging.getLogger(__name__)

# Sentinel for "read the timeout from the environment"
_ENV_TIMEOUT = object()


@dataclass
class TranscodeResult:
    """Result of one transcode invocation."""

    ok: bool
    returncode: int | None = None
    message: str | None = None


class Transcoder(Protocol):
    def transcode(self, source: Path, output: Path, speed: float) -> TranscodeResult:
        """Write a tempo-shifted, audio-only copy of source to output.

        Must not raise for per-file failures; report them in the result.
        """
        ...


def build_atempo_filter(speed: float) -> str:
    """Build an ffmpeg audio filter that changes tempo by `speed`.

    A single atempo stage is only portable within [0.5, 2.0], so factors
    outside that range are split into a chain whose product is `speed`.

    Args:
        speed: Tempo multiplier, > 0.

    Returns:
        Filter string, e.g. "atempo=1.5" or "atempo=2.0,atempo=1.5".

    Raises:
        ValueError: If speed is not positive and finite.
    """
    if not (speed > 0 and math.isfinite(speed)):
        raise ValueError(f"speed must be a positive finite number, got {speed}")

    stages: list[float] = []
    remaining = float(speed)
    while remaining > ATEMPO_MAX:
        stages.append(ATEMPO_MAX)
        remaining /= ATEMPO_MAX
    while remaining < ATEMPO_MIN:
        stages.append(ATEMPO_MIN)
        remaining /= ATEMPO_MIN
    stages.append(remaining)
    return ",".join(f"atempo={stage!r}" for stage in stages)


class FfmpegTranscoder:
    """Transcoder that runs one ffmpeg process per file."""

    def __init__(self, binary: str | None = None, timeout: float | None | object = _ENV_TIMEOUT):
        self.binary = binary or get_ffmpeg_binary()
        self.timeout = get_transcode_timeout() if timeout is _ENV_TIMEOUT else timeout

    def build_command(self, source: Path, output: Path, speed: float) -> list[str]:
        return [
            self.binary,
            "-nostdin",
            "-i",
            str(source),
            "-filter:a",
            build_atempo_filter(speed),
            "-vn",
            str(output),
            "-y",
            "-loglevel",
            "error",
        ]

    def transcode(self, source: Path, output: Path, speed: float) -> TranscodeResult:
        cmd = self.build_command(source, output, speed)
        logger.debug("Running %s", shlex.join(cmd))

        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return TranscodeResult(ok=False, message=f"ffmpeg timed out after {self.timeout}s")
        except OSError as e:
            return TranscodeResult(ok=False, message=f"Failed to launch {self.binary}: {e}")

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            return TranscodeResult(
                ok=False,
                returncode=result.returncode,
                message=stderr or f"ffmpeg exited with status {result.returncode}",
            )
        return TranscodeResult(ok=True, returncode=0)
