"""XP3 Tempo - Member sniffing.

Classifies a file as transcodable audio by its leading magic bytes. The
file's name and extension are not trusted: game archives routinely store Ogg
streams under arbitrary names.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

from xp3tempo.config import AUDIO_SIGNATURE, SIGNATURE_LENGTH

logger = logging.getLogger(__name__)


def read_signature(stream: BinaryIO, length: int = SIGNATURE_LENGTH) -> bytes | None:
    """Read exactly `length` bytes from the current position.

    Loops over short reads, so pipes and slow streams behave like files.

    Returns:
        The prefix, or None if the stream ends first.
    """
    buf = b""
    while len(buf) < length:
        chunk = stream.read(length - len(buf))
        if not chunk:
            return None
        buf += chunk
    return buf


def stream_is_transcodable_audio(stream: BinaryIO) -> bool:
    """Check whether a stream positioned at offset 0 starts with the audio signature."""
    return read_signature(stream) == AUDIO_SIGNATURE


def is_transcodable_audio(path: Path) -> bool:
    """Check whether a file is an Ogg stream.

    Opens its own handle; the transcoder reads the file again from the start.
    A file too short to hold the signature, or one that cannot be opened, is
    not eligible. Neither case raises.

    Args:
        path: File to inspect.

    Returns:
        True if the file starts with the audio signature.
    """
    try:
        with open(path, "rb") as f:
            header = read_signature(f)
    except OSError as e:
        logger.warning("Cannot read header of %s: %s", path, e)
        return False

    if header is None:
        logger.warning("File too short to hold a header: %s", path)
        return False
    if header != AUDIO_SIGNATURE:
        logger.debug("Skipping non-ogg file: %s", path)
        return False
    return True
