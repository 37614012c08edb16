"""Session locks and session logs on disk."""

from .session_lock import LockConflict, LockHandle, acquire_session_lock, list_active_sessions, release_session_lock
from .session_log import append_entry, create_session_log, mark_running_sessions, read_log, summarize_session

__all__ = [
    "LockConflict",
    "LockHandle",
    "acquire_session_lock",
    "append_entry",
    "create_session_log",
    "list_active_sessions",
    "mark_running_sessions",
    "read_log",
    "release_session_lock",
    "summarize_session",
]
