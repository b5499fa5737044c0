"""XP3 Tempo - Path conventions.

Returns derived Paths and archive entry names. Does NOT create directories.
Directory creation is the responsibility of the calling code.
"""

from pathlib import Path, PurePosixPath

from xp3tempo.config import ARCHIVE_SUFFIX, BACKUP_SUFFIX, UNPACKED_DIR_SUFFIX


def backup_archive_path(input_path: Path) -> Path:
    """Get the backup path the original archive is renamed to.

    Args:
        input_path: Original archive path.

    Returns:
        Path: {stem}.xp3.bak
    """
    return input_path.with_suffix(BACKUP_SUFFIX)


def output_archive_path(input_path: Path) -> Path:
    """Get the archive path a run writes to.

    For an archive input this is the input itself (extension normalized);
    for a directory input it is a sibling named after the directory.

    Args:
        input_path: Archive file or working directory.

    Returns:
        Path: {stem}.xp3
    """
    return input_path.with_suffix(ARCHIVE_SUFFIX)


def unpack_dir_path(archive_path: Path) -> Path:
    """Get the default extraction directory for an archive.

    Args:
        archive_path: Archive file.

    Returns:
        Path: {stem}/, or {name}_unpacked/ when the archive has no extension.
    """
    target = archive_path.with_suffix("")
    if target == archive_path:
        target = archive_path.with_name(f"{archive_path.name}{UNPACKED_DIR_SUFFIX}")
    return target


def entry_name_for(path: Path, root: Path) -> str:
    """Get the archive entry name for a file under root.

    Args:
        path: File inside root.
        root: Working root.

    Returns:
        Relative path joined with "/" regardless of the host separator.

    Raises:
        ValueError: If path is not under root.
    """
    return path.relative_to(root).as_posix()


def safe_entry_target(root: Path, name: str) -> Path:
    """Resolve where an archive entry is extracted to.

    Entry names use "/" separators; some archives also carry "\\".
    Names that would land outside root are rejected.

    Args:
        root: Extraction directory.
        name: Entry name as stored in the archive.

    Returns:
        Path under root.

    Raises:
        ValueError: If the name is empty, absolute, or escapes root.
    """
    parts = PurePosixPath(name.replace("\\", "/")).parts
    if not parts or parts[0] == "/" or ".." in parts:
        raise ValueError(f"Unsafe archive entry name: {name!r}")
    target = root.joinpath(*parts)
    # Drive-qualified names on Windows replace the root entirely
    if not target.is_relative_to(root):
        raise ValueError(f"Unsafe archive entry name: {name!r}")
    return target
