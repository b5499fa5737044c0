"""XP3 Tempo - Command line interface.

Usage:
    xp3tempo speedup game.xp3 --speed 1.5      # transcode and repack in place
    xp3tempo speedup game.xp3 -s 1.5 --nopack  # extract to game/ and transcode only
    xp3tempo speedup voice/ -s 1.25 -n         # transcode a directory in place
    xp3tempo unpack game.xp3 [out_dir]
    xp3tempo pack game/ [game.xp3]

Exit codes: 0 success (individual transcode failures are only logged),
1 structural failure, 2 invalid input.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from xp3tempo import __version__
from xp3tempo.config import DEFAULT_SPEED, LOG_LEVEL
from xp3tempo.errors import InvalidInputError, PipelineError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID_INPUT = 2

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None, quiet: bool = False) -> None:
    """Configure root logging once for the process.

    Args:
        level: Level name (e.g. "DEBUG"); defaults to XP3TEMPO_LOG_LEVEL or INFO.
        quiet: Only show warnings and errors.
    """
    if quiet:
        log_level = logging.WARNING
    else:
        log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xp3tempo",
        description="Batch tempo-shift the Ogg audio inside XP3 archives",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Log level (e.g., INFO, DEBUG)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")

    subparsers = parser.add_subparsers(dest="command", required=True)

    speedup = subparsers.add_parser("speedup", help="Speed up the audio in an XP3 file or a directory")
    speedup.add_argument("input", type=Path, help="XP3 file, or a directory containing audio files")
    speedup.add_argument(
        "-s",
        "--speed",
        type=float,
        default=DEFAULT_SPEED,
        help="Tempo multiplier; 1 only unpacks and repacks (default: 1.0)",
    )
    speedup.add_argument("-n", "--nopack", action="store_true", help="Do not repack after transcoding")

    unpack = subparsers.add_parser("unpack", help="Extract an XP3 file")
    unpack.add_argument("xp3_file", type=Path, help="XP3 file path")
    unpack.add_argument("output_path", type=Path, nargs="?", help="Output directory (default: <name>/)")

    pack = subparsers.add_parser("pack", help="Pack a directory into an XP3 file")
    pack.add_argument("input_dir", type=Path, help="Directory to pack")
    pack.add_argument("output_file", type=Path, nargs="?", help="Output XP3 file (default: <dir>.xp3)")

    return parser


def _run_speedup(args: argparse.Namespace) -> None:
    from xp3tempo.orchestrator import process_archive

    result = process_archive(args.input, speed=args.speed, no_pack=args.nopack)
    if result.transcode is not None and result.transcode.failed:
        logger.warning(
            "%d files failed to transcode and were left unchanged:\n  %s",
            result.transcode.failed,
            "\n  ".join(str(p) for p in result.transcode.failed_paths),
        )
    if result.backup_path is not None:
        logger.info("Original archive kept at %s", result.backup_path)


def _run_unpack(args: argparse.Namespace) -> None:
    from services.worker_unpack.run import unpack_archive
    from xp3tempo.utils.paths import unpack_dir_path

    if not args.xp3_file.is_file():
        raise InvalidInputError(f"XP3 file does not exist: {args.xp3_file}")
    output_dir = args.output_path or unpack_dir_path(args.xp3_file)
    unpack_archive(args.xp3_file, output_dir)


def _run_pack(args: argparse.Namespace) -> None:
    from services.worker_pack.run import pack_directory
    from xp3tempo.utils.paths import output_archive_path

    if not args.input_dir.is_dir():
        raise InvalidInputError(f"Input path must be a directory: {args.input_dir}")
    output_file = args.output_file
    if output_file is None:
        input_dir = args.input_dir.resolve()
        if not input_dir.name:
            raise InvalidInputError(f"Cannot derive an archive name from {args.input_dir}; give an output file")
        output_file = output_archive_path(input_dir)
    pack_directory(args.input_dir, output_file)


_COMMANDS = {
    "speedup": _run_speedup,
    "unpack": _run_unpack,
    "pack": _run_pack,
}


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.quiet)

    try:
        _COMMANDS[args.command](args)
    except InvalidInputError as e:
        logger.error("Invalid input: %s", e.message)
        return EXIT_INVALID_INPUT
    except PipelineError as e:
        logger.error("Processing failed: %s", e)
        return EXIT_FAILURE

    logger.info("Done")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
