"""Tests for the archive staging pipeline (xp3tempo.orchestrator).

All runs use FakeTranscoder; archives are real XP3 files on disk.
"""

from pathlib import Path
from unittest import mock

import pytest
from conftest import OGG_PAYLOAD, FakeTranscoder, fake_transcoded, read_archive, write_archive

from xp3tempo.errors import (
    ArchiveStructureError,
    InvalidInputError,
    PipelineErrorCode,
    RepackError,
)
from xp3tempo.orchestrator import PipelineState, process_archive, validate_run_config


class TestValidateRunConfig:
    """Bad options are rejected as InvalidInputError."""

    def test_valid(self, game_archive):
        archive, _ = game_archive
        config = validate_run_config(archive, 1.5, False)
        assert config.input == archive.resolve()
        assert config.input_is_archive

    def test_missing_input(self, workdir):
        with pytest.raises(InvalidInputError, match="does not exist"):
            validate_run_config(workdir / "missing.xp3", 1.5, False)

    def test_filesystem_root(self, workdir):
        with pytest.raises(InvalidInputError, match="filesystem root") as exc_info:
            validate_run_config(Path(workdir.anchor), 1.5, False)
        assert exc_info.value.error_code == PipelineErrorCode.INVALID_INPUT

    def test_filesystem_root_never_reaches_the_pipeline(self, workdir):
        transcoder = FakeTranscoder()
        with pytest.raises(InvalidInputError):
            process_archive(Path(workdir.anchor), speed=1.5, transcoder=transcoder)
        assert transcoder.calls == []

    @pytest.mark.parametrize("speed", [0, -1.0, float("nan"), float("inf")])
    def test_bad_speed(self, game_archive, speed):
        archive, _ = game_archive
        with pytest.raises(InvalidInputError) as exc_info:
            validate_run_config(archive, speed, False)
        assert exc_info.value.error_code == PipelineErrorCode.INVALID_INPUT
        assert "speed" in exc_info.value.message


class TestArchiveRun:
    """Archive input, repacked in place."""

    def test_transcodes_and_repacks(self, workdir, game_archive, scratch_parent):
        archive, files = game_archive
        original_bytes = archive.read_bytes()
        transcoder = FakeTranscoder()

        result = process_archive(archive, speed=1.5, transcoder=transcoder)

        assert transcoder.sources == ["a.ogg", "b.ogg"]
        assert result.transcode.transcoded == 2
        assert result.transcode.skipped == 2
        assert result.packed_count == 4
        assert result.backup_path == (workdir / "game.xp3.bak").resolve()
        assert result.output_path == archive.resolve()

        # Backup holds the original bytes; the new archive holds the shifted audio
        assert (workdir / "game.xp3.bak").read_bytes() == original_bytes
        repacked = read_archive(archive)
        assert repacked == {
            "voice/a.ogg": fake_transcoded(files["voice/a.ogg"], 1.5),
            "voice/b.ogg": fake_transcoded(files["voice/b.ogg"], 1.5),
            "scenario/start.ks": files["scenario/start.ks"],
            "empty.txt": b"",
        }

    def test_state_sequence(self, game_archive, scratch_parent):
        archive, _ = game_archive
        result = process_archive(archive, speed=1.5, transcoder=FakeTranscoder())
        assert result.states == [
            PipelineState.START,
            PipelineState.RESOLVED,
            PipelineState.TRANSCODED,
            PipelineState.REPACKED,
            PipelineState.DONE,
        ]

    def test_scratch_removed_after_success(self, game_archive, scratch_parent):
        archive, _ = game_archive

        result = process_archive(archive, speed=1.5, transcoder=FakeTranscoder())

        assert result.scratch
        assert not result.working_root.exists()
        assert list(scratch_parent.iterdir()) == []

    def test_speed_one_skips_transcode(self, workdir, game_archive, scratch_parent):
        archive, files = game_archive
        transcoder = FakeTranscoder()

        result = process_archive(archive, speed=1.0, transcoder=transcoder)

        assert transcoder.calls == []
        assert result.transcode is None
        assert read_archive(archive) == files
        assert (workdir / "game.xp3.bak").exists()

    def test_no_eligible_files(self, workdir, scratch_parent):
        files = {"scenario/start.ks": b"*start\n", "image/bg.png": b"\x89PNG"}
        archive = write_archive(workdir / "data.xp3", files)
        transcoder = FakeTranscoder()

        result = process_archive(archive, speed=2.0, transcoder=transcoder)

        assert transcoder.calls == []
        assert result.transcode.processed == 0
        assert read_archive(archive) == files

    def test_failed_file_is_repacked_unchanged(self, game_archive, scratch_parent):
        archive, files = game_archive

        result = process_archive(
            archive, speed=1.5, transcoder=FakeTranscoder(fail_names={"b.ogg"}, leave_partial=True)
        )

        repacked = read_archive(archive)
        assert result.transcode.failed == 1
        assert repacked["voice/b.ogg"] == files["voice/b.ogg"]
        assert repacked["voice/a.ogg"] == fake_transcoded(files["voice/a.ogg"], 1.5)
        assert not any(name.startswith("temp_") or "/temp_" in name for name in repacked)

    def test_existing_backup_is_overwritten(self, workdir, game_archive, scratch_parent):
        archive, _ = game_archive
        original_bytes = archive.read_bytes()
        (workdir / "game.xp3.bak").write_bytes(b"older backup")

        process_archive(archive, speed=1.5, transcoder=FakeTranscoder())

        assert (workdir / "game.xp3.bak").read_bytes() == original_bytes

    def test_invalid_speed_touches_nothing(self, workdir, game_archive, scratch_parent):
        archive, _ = game_archive
        original_bytes = archive.read_bytes()
        transcoder = FakeTranscoder()

        with pytest.raises(InvalidInputError):
            process_archive(archive, speed=0, transcoder=transcoder)

        assert transcoder.calls == []
        assert archive.read_bytes() == original_bytes
        assert not (workdir / "game.xp3.bak").exists()
        assert not (workdir / "game").exists()
        assert list(scratch_parent.iterdir()) == []

    def test_corrupt_archive_is_fatal_and_untouched(self, workdir, scratch_parent):
        archive = workdir / "broken.xp3"
        archive.write_bytes(b"XP3 but not really")

        with pytest.raises(ArchiveStructureError):
            process_archive(archive, speed=1.5, transcoder=FakeTranscoder())

        assert archive.read_bytes() == b"XP3 but not really"
        assert not (workdir / "broken.xp3.bak").exists()
        assert list(scratch_parent.iterdir()) == []

    def test_repack_failure_keeps_backup(self, workdir, game_archive, scratch_parent):
        archive, _ = game_archive
        original_bytes = archive.read_bytes()

        with mock.patch(
            "services.worker_pack.run.sync_stream", side_effect=OSError(28, "No space left on device")
        ):
            with pytest.raises(RepackError) as exc_info:
                process_archive(archive, speed=1.5, transcoder=FakeTranscoder())

        assert exc_info.value.error_code == PipelineErrorCode.FINALIZE_FAILED
        assert (workdir / "game.xp3.bak").read_bytes() == original_bytes
        assert not archive.exists()
        assert list(scratch_parent.iterdir()) == []

    def test_backup_failure(self, game_archive, scratch_parent):
        archive, _ = game_archive
        original_bytes = archive.read_bytes()

        with mock.patch("pathlib.Path.replace", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(RepackError) as exc_info:
                process_archive(archive, speed=1.0, transcoder=FakeTranscoder())

        assert exc_info.value.error_code == PipelineErrorCode.BACKUP_FAILED
        assert archive.read_bytes() == original_bytes


class TestNoPack:
    """no_pack stops after transcoding."""

    def test_archive_extracted_next_to_input(self, workdir, game_archive, scratch_parent):
        archive, files = game_archive
        original_bytes = archive.read_bytes()

        result = process_archive(archive, speed=1.5, no_pack=True, transcoder=FakeTranscoder())

        out = (workdir / "game").resolve()
        assert result.working_root == out
        assert not result.scratch
        assert result.states[-2:] == [PipelineState.SKIPPED, PipelineState.DONE]
        assert (out / "voice" / "a.ogg").read_bytes() == fake_transcoded(files["voice/a.ogg"], 1.5)
        assert (out / "scenario" / "start.ks").read_bytes() == files["scenario/start.ks"]
        assert archive.read_bytes() == original_bytes
        assert not (workdir / "game.xp3.bak").exists()
        assert result.pack is None

    def test_speed_one_no_pack_only_extracts(self, workdir, game_archive, scratch_parent):
        archive, files = game_archive
        transcoder = FakeTranscoder()

        process_archive(archive, speed=1.0, no_pack=True, transcoder=transcoder)

        assert transcoder.calls == []
        for name, data in files.items():
            assert (workdir / "game" / name).read_bytes() == data


class TestDirectoryRun:
    """Directory input is the working root and is never deleted."""

    def _make_dir(self, workdir):
        root = workdir / "voice"
        (root / "ch1").mkdir(parents=True)
        (root / "ch1" / "001.ogg").write_bytes(OGG_PAYLOAD + b"001")
        (root / "readme.txt").write_bytes(b"not audio")
        return root

    def test_directory_no_pack(self, workdir):
        root = self._make_dir(workdir)

        result = process_archive(root, speed=1.25, no_pack=True, transcoder=FakeTranscoder())

        assert result.working_root == root.resolve()
        assert result.unpack is None
        assert (root / "ch1" / "001.ogg").read_bytes() == fake_transcoded(OGG_PAYLOAD + b"001", 1.25)
        assert not (workdir / "voice.xp3").exists()

    def test_directory_packed_to_sibling(self, workdir):
        root = self._make_dir(workdir)

        result = process_archive(root, speed=1.25, transcoder=FakeTranscoder())

        assert result.output_path == (workdir / "voice.xp3").resolve()
        assert result.backup_path is None
        assert root.is_dir()
        assert sorted(read_archive(workdir / "voice.xp3")) == ["ch1/001.ogg", "readme.txt"]

    def test_speed_one_no_pack_is_idempotent(self, workdir):
        root = self._make_dir(workdir)
        before = {p: p.read_bytes() for p in root.rglob("*") if p.is_file()}

        for _ in range(2):
            process_archive(root, speed=1.0, no_pack=True, transcoder=FakeTranscoder())

        after = {p: p.read_bytes() for p in root.rglob("*") if p.is_file()}
        assert after == before
