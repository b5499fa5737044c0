"""XP3 Tempo - Failpoint injection for crash testing.

Provides deterministic crash injection for verifying the in-place rewrite
guarantees: a crash after the original archive was renamed to its backup
must leave the backup intact, and a crash before a transcode replaced its
source must leave the source intact.

Safety gate: Failpoints are only active when XP3TEMPO_ENABLE_FAILPOINTS=1.
The default is a complete no-op.

Environment variables:
- XP3TEMPO_ENABLE_FAILPOINTS: Set to "1" to enable the failpoint system
- XP3TEMPO_FAILPOINT: Name of the failpoint to trigger (e.g., "PACK_AFTER_BACKUP")
- XP3TEMPO_FAILPOINT_EXIT_CODE: Exit code to use when crashing (default: 42)
- XP3TEMPO_FAILPOINT_ONCE: Set to "1" to only trigger once, then clear

Failpoints in use:
- ATOMIC_REPLACE_BEFORE_RENAME
- TRANSCODE_BEFORE_REPLACE
- PACK_AFTER_BACKUP
- PACK_AFTER_ENTRY
- PACK_BEFORE_FINALIZE
"""

from __future__ import annotations

import os

_PREFIX = "FAILPOINT_"


def _normalize(name: str) -> str:
    name = name.upper()
    if name.startswith(_PREFIX):
        name = name[len(_PREFIX) :]
    return name


def maybe_fail(point: str) -> None:
    """Crash the process if the named failpoint is active.

    Uses os._exit() so no finally blocks, context managers or atexit hooks
    run, which is what a power loss or kill -9 looks like to the filesystem.

    Args:
        point: The failpoint name to check (e.g., "PACK_AFTER_BACKUP").
    """
    if os.environ.get("XP3TEMPO_ENABLE_FAILPOINTS") != "1":
        return

    target = os.environ.get("XP3TEMPO_FAILPOINT", "")
    if not target or _normalize(point) != _normalize(target):
        return

    try:
        exit_code = int(os.environ.get("XP3TEMPO_FAILPOINT_EXIT_CODE", "42"))
    except ValueError:
        exit_code = 42

    if os.environ.get("XP3TEMPO_FAILPOINT_ONCE") == "1":
        # Only affects the current process
        os.environ.pop("XP3TEMPO_FAILPOINT", None)
        os.environ.pop("XP3TEMPO_FAILPOINT_ONCE", None)

    os._exit(exit_code)


def is_failpoint_enabled() -> bool:
    """Check if the failpoint system is enabled."""
    return os.environ.get("XP3TEMPO_ENABLE_FAILPOINTS") == "1"


def get_active_failpoint() -> str | None:
    """Get the currently active failpoint name (without FAILPOINT_ prefix), if any."""
    if not is_failpoint_enabled():
        return None
    target = os.environ.get("XP3TEMPO_FAILPOINT", "")
    return _normalize(target) if target else None
