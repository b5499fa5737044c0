"""XP3 Tempo - Pipeline error taxonomy.

Fatal conditions are raised as PipelineError subclasses carrying an error
code. Per-item conditions (one entry that cannot be created, one file that
fails to transcode) are never raised; they are logged and reported in the
stage result dataclasses.
"""

from __future__ import annotations

from enum import StrEnum


class PipelineErrorCode(StrEnum):
    """Error codes for fatal pipeline failures."""

    INVALID_INPUT = "INVALID_INPUT"
    ARCHIVE_OPEN_FAILED = "ARCHIVE_OPEN_FAILED"
    ENTRY_UNPACK_FAILED = "ENTRY_UNPACK_FAILED"
    TRANSCODE_ROOT_UNREADABLE = "TRANSCODE_ROOT_UNREADABLE"
    BACKUP_FAILED = "BACKUP_FAILED"
    ARCHIVE_CREATE_FAILED = "ARCHIVE_CREATE_FAILED"
    ENTRY_WRITE_FAILED = "ENTRY_WRITE_FAILED"
    FINALIZE_FAILED = "FINALIZE_FAILED"


class PipelineError(Exception):
    """Base exception for fatal pipeline errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class InvalidInputError(PipelineError):
    """Input path or run options rejected before any mutation."""

    def __init__(self, reason: str):
        super().__init__(PipelineErrorCode.INVALID_INPUT, reason)


class ArchiveStructureError(PipelineError):
    """Archive cannot be opened, or an entry cannot be read back."""


class TranscodeRootError(PipelineError):
    """Working root is missing or unreadable."""

    def __init__(self, root: str, reason: str):
        super().__init__(
            PipelineErrorCode.TRANSCODE_ROOT_UNREADABLE,
            f"Cannot read working root {root}: {reason}",
        )


class RepackError(PipelineError):
    """Backup, archive creation, entry write or finalize failed."""
