"""XP3 Tempo - Utility modules."""

from xp3tempo.utils.atomic_io import create_sibling_temp, remove_if_exists, replace_atomic, sync_stream
from xp3tempo.utils.paths import (
    backup_archive_path,
    entry_name_for,
    output_archive_path,
    safe_entry_target,
    unpack_dir_path,
)
from xp3tempo.utils.sniff import is_transcodable_audio, read_signature

__all__ = [
    # atomic_io
    "create_sibling_temp",
    "replace_atomic",
    "remove_if_exists",
    "sync_stream",
    # paths
    "backup_archive_path",
    "output_archive_path",
    "unpack_dir_path",
    "entry_name_for",
    "safe_entry_target",
    # sniff
    "is_transcodable_audio",
    "read_signature",
]
