"""Shared pytest fixtures for XP3 Tempo tests.

Builds small Ogg-looking files and XP3 archives on disk, and provides a
fake transcoder so pipeline tests never need ffmpeg.
"""

import io
import tempfile
import threading
from pathlib import Path

import pytest

from xp3tempo.archive import (
    HeaderVersion,
    IndexCompression,
    ProtectionFlag,
    SegmentCompression,
    XP3Reader,
    XP3Writer,
)
from xp3tempo.transcoder import TranscodeResult

# Minimal bytes that pass the member sniffer
OGG_PAYLOAD = b"OggS" + b"\x00" * 60


def fake_transcoded(data: bytes, speed: float) -> bytes:
    """What FakeTranscoder writes for a given source."""
    return data + f"|atempo={speed}".encode()


class FakeTranscoder:
    """Transcoder stand-in.

    Writes the source bytes plus a speed marker to the output. Files whose
    name is in fail_names fail; with leave_partial, the failure leaves a
    half-written output behind like a killed ffmpeg would.
    """

    def __init__(self, fail_names=(), leave_partial=False, raise_names=()):
        self.fail_names = set(fail_names)
        self.raise_names = set(raise_names)
        self.leave_partial = leave_partial
        self.calls = []
        self._lock = threading.Lock()

    def transcode(self, source, output, speed):
        with self._lock:
            self.calls.append((Path(source), Path(output), speed))
        if source.name in self.raise_names:
            raise RuntimeError("transcoder crashed")
        if source.name in self.fail_names:
            if self.leave_partial:
                Path(output).write_bytes(b"partial")
            return TranscodeResult(ok=False, returncode=1, message="Invalid data found when processing input")
        Path(output).write_bytes(fake_transcoded(Path(source).read_bytes(), speed))
        return TranscodeResult(ok=True, returncode=0)

    @property
    def sources(self):
        return sorted(call[0].name for call in self.calls)


def write_archive(
    path,
    files,
    header_version=HeaderVersion.CURRENT,
    index_compression=IndexCompression.COMPRESSED,
    segment_compression=SegmentCompression.UNCOMPRESSED,
    protection=ProtectionFlag.NOT_PROTECTED,
    timestamp_ms=None,
):
    """Write an XP3 archive holding `files` ({entry name: bytes}).

    Returns:
        Path to the archive.
    """
    path = Path(path)
    with open(path, "wb") as f:
        writer = XP3Writer.start(f, header_version, index_compression)
        for name, data in files.items():
            entry = writer.enter_file(protection, name, timestamp_ms)
            entry.write_segment(segment_compression, data)
            entry.finish()
        writer.finish()
    return path


def read_archive(path):
    """Read every entry of an XP3 archive into {name: bytes}."""
    contents = {}
    with open(path, "rb") as f:
        reader = XP3Reader.open_archive(f)
        for name, _info in reader.entries():
            sink = io.BytesIO()
            reader.unpack(name, sink)
            contents[name] = sink.getvalue()
    return contents


@pytest.fixture
def workdir():
    """Temporary working directory, removed after the test.

    Yields:
        Path: Directory path.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()


@pytest.fixture
def game_archive(workdir):
    """The archive used by most pipeline tests.

    Holds two Ogg voice files, one script and one empty file.

    Returns:
        tuple: (archive path, {entry name: bytes})
    """
    files = {
        "voice/a.ogg": OGG_PAYLOAD + b"voice-a",
        "voice/b.ogg": OGG_PAYLOAD + b"voice-b",
        "scenario/start.ks": b"*start\n[wait time=200]\n",
        "empty.txt": b"",
    }
    return write_archive(workdir / "game.xp3", files), files


@pytest.fixture
def isolated_env(monkeypatch):
    """Clear XP3TEMPO_* variables so tests see defaults."""
    for name in (
        "XP3TEMPO_FFMPEG",
        "XP3TEMPO_WORKERS",
        "XP3TEMPO_TRANSCODE_TIMEOUT",
        "XP3TEMPO_SCRATCH_DIR",
        "XP3TEMPO_ENABLE_FAILPOINTS",
        "XP3TEMPO_FAILPOINT",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def scratch_parent(workdir, isolated_env):
    """Point scratch extraction at a directory the test can inspect."""
    parent = workdir / "scratch"
    parent.mkdir()
    isolated_env.setenv("XP3TEMPO_SCRATCH_DIR", str(parent))
    return parent
