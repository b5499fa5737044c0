"""XP3 Tempo - Resilience harness tests.

Crash scenarios for the in-place rewrite. Every test runs pipeline code in
a subprocess with a failpoint enabled, so the crash is a real os._exit and
no cleanup code runs.

Guarantees checked:
- A crash after the backup rename leaves the backup byte-identical to the
  original archive
- A crash mid-repack leaves the backup intact; rerunning against the backup
  recovers
- A crash before a transcode replaces its source leaves the source intact
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

from conftest import OGG_PAYLOAD, read_archive, write_archive

REPO_ROOT = Path(__file__).parent.parent

# Stand-in transcoder used inside the subprocess
_FAKE_TRANSCODER = """
from pathlib import Path
from xp3tempo.transcoder import TranscodeResult

class AppendTranscoder:
    def transcode(self, source, output, speed):
        Path(output).write_bytes(Path(source).read_bytes() + b"|fast")
        return TranscodeResult(ok=True, returncode=0)
"""


def run_with_failpoint(
    script: str,
    failpoint: str,
    env_extras: dict | None = None,
    exit_code: int = 42,
    timeout: float = 60.0,
) -> subprocess.CompletedProcess:
    """Run Python code in a subprocess with a failpoint enabled.

    Args:
        script: Python code to execute.
        failpoint: Failpoint name to trigger.
        env_extras: Additional environment variables.
        exit_code: Exit code the failpoint crashes with.
        timeout: Subprocess timeout in seconds.

    Returns:
        CompletedProcess result.
    """
    env = os.environ.copy()
    env["XP3TEMPO_ENABLE_FAILPOINTS"] = "1"
    env["XP3TEMPO_FAILPOINT"] = failpoint
    env["XP3TEMPO_FAILPOINT_EXIT_CODE"] = str(exit_code)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), env.get("PYTHONPATH")]))
    if env_extras:
        env.update(env_extras)

    return subprocess.run(
        [sys.executable, "-c", _FAKE_TRANSCODER + script],
        env=env,
        cwd=REPO_ROOT,
        capture_output=True,
        timeout=timeout,
    )


def _pipeline_script(archive: Path, speed: float = 1.5) -> str:
    return f"""
from xp3tempo.orchestrator import process_archive
process_archive({str(archive)!r}, speed={speed}, transcoder=AppendTranscoder())
print("SHOULD NOT REACH HERE")
"""


def _make_archive(workdir: Path) -> Path:
    return write_archive(
        workdir / "game.xp3",
        {"voice/a.ogg": OGG_PAYLOAD + b"a", "scenario/start.ks": b"*start\n"},
    )


class TestPackFailpoints:
    """Crashes during backup and repack."""

    def test_kill_after_backup_keeps_original_bytes(self, workdir):
        archive = _make_archive(workdir)
        original_bytes = archive.read_bytes()
        scratch = workdir / "scratch"
        scratch.mkdir()

        result = run_with_failpoint(
            _pipeline_script(archive),
            "PACK_AFTER_BACKUP",
            env_extras={"XP3TEMPO_SCRATCH_DIR": str(scratch)},
        )

        assert result.returncode == 42, result.stderr.decode()
        backup = workdir / "game.xp3.bak"
        assert backup.read_bytes() == original_bytes
        assert not archive.exists(), "Repack must not have started"

    def test_kill_mid_repack_then_recover_from_backup(self, workdir):
        archive = _make_archive(workdir)
        original_bytes = archive.read_bytes()
        scratch = workdir / "scratch"
        scratch.mkdir()

        result = run_with_failpoint(
            _pipeline_script(archive),
            "PACK_AFTER_ENTRY",
            env_extras={"XP3TEMPO_SCRATCH_DIR": str(scratch)},
        )

        assert result.returncode == 42, result.stderr.decode()
        backup = workdir / "game.xp3.bak"
        assert backup.read_bytes() == original_bytes

        # Operator recovery: restore the backup and rerun without failpoints
        backup.replace(archive)
        env = {k: v for k, v in os.environ.items() if not k.startswith("XP3TEMPO_FAILPOINT")}
        env.pop("XP3TEMPO_ENABLE_FAILPOINTS", None)
        env["PYTHONPATH"] = str(REPO_ROOT)
        env["XP3TEMPO_SCRATCH_DIR"] = str(scratch)
        rerun = subprocess.run(
            [sys.executable, "-c", _FAKE_TRANSCODER + _pipeline_script(archive)],
            env=env,
            cwd=REPO_ROOT,
            capture_output=True,
            timeout=60.0,
        )

        assert rerun.returncode == 0, rerun.stderr.decode()
        assert read_archive(archive)["voice/a.ogg"] == OGG_PAYLOAD + b"a|fast"
        assert (workdir / "game.xp3.bak").read_bytes() == original_bytes

    def test_kill_before_finalize_leaves_backup(self, workdir):
        archive = _make_archive(workdir)
        original_bytes = archive.read_bytes()

        result = run_with_failpoint(
            _pipeline_script(archive),
            "PACK_BEFORE_FINALIZE",
            env_extras={"XP3TEMPO_SCRATCH_DIR": str(workdir)},
        )

        assert result.returncode == 42
        assert (workdir / "game.xp3.bak").read_bytes() == original_bytes


class TestTranscodeFailpoints:
    """Crashes between a finished transcode and its rename."""

    def test_kill_before_replace_leaves_source(self, workdir):
        root = workdir / "voice"
        root.mkdir()
        source = root / "a.ogg"
        source.write_bytes(OGG_PAYLOAD)

        script = f"""
from services.worker_transcode.run import process_audio_files
process_audio_files({str(root)!r}, 1.5, transcoder=AppendTranscoder(), max_workers=1)
print("SHOULD NOT REACH HERE")
"""
        result = run_with_failpoint(script, "TRANSCODE_BEFORE_REPLACE")

        assert result.returncode == 42, result.stderr.decode()
        assert source.read_bytes() == OGG_PAYLOAD
        # The completed temp output is left behind; only the rename was skipped
        [temp] = root.glob("temp_a.*.ogg")
        assert temp.read_bytes() == OGG_PAYLOAD + b"|fast"

    def test_kill_inside_atomic_replace(self, workdir):
        root = workdir / "voice"
        root.mkdir()
        source = root / "a.ogg"
        source.write_bytes(OGG_PAYLOAD)

        script = f"""
from services.worker_transcode.run import process_audio_files
process_audio_files({str(root)!r}, 1.5, transcoder=AppendTranscoder(), max_workers=1)
"""
        result = run_with_failpoint(script, "ATOMIC_REPLACE_BEFORE_RENAME", exit_code=17)

        assert result.returncode == 17
        assert source.read_bytes() == OGG_PAYLOAD

    def test_disabled_failpoints_complete(self, workdir):
        root = workdir / "voice"
        root.mkdir()
        source = root / "a.ogg"
        source.write_bytes(OGG_PAYLOAD)

        script = f"""
from services.worker_transcode.run import process_audio_files
process_audio_files({str(root)!r}, 1.5, transcoder=AppendTranscoder(), max_workers=1)
"""
        result = run_with_failpoint(
            script, "TRANSCODE_BEFORE_REPLACE", env_extras={"XP3TEMPO_ENABLE_FAILPOINTS": "0"}
        )

        assert result.returncode == 0, result.stderr.decode()
        assert source.read_bytes() == OGG_PAYLOAD + b"|fast"
        assert sorted(p.name for p in root.iterdir()) == ["a.ogg"]
