"""Append-only JSONL session logs under ``<logs_root>/<project>/``."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from ...io_utils import append_jsonl, project_name, sanitize_for_filename
from ..domain.models import LockRecord
from .session_lock import session_matches_lock

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"
PRIORITIES = ("P0", "P1", "P2", "P3")


class _LogEntry(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


def log_filename(timestamp: datetime, git_branch: Optional[str] = None) -> str:
    stamp = timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    branch = sanitize_for_filename(git_branch or "")
    return f"{stamp}_{branch}{LOG_SUFFIX}" if branch else f"{stamp}{LOG_SUFFIX}"


def create_session_log(
    logs_root: Path,
    project_path: Union[str, Path],
    git_branch: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Path:
    """Reserve a new log path for a session; the file appears on first append."""
    project_dir = Path(logs_root) / project_name(str(project_path))
    project_dir.mkdir(parents=True, exist_ok=True)
    path = project_dir / log_filename(now or datetime.now(timezone.utc), git_branch)
    suffix = 1
    while path.exists():
        path = path.with_name(f"{path.name[: -len(LOG_SUFFIX)]}-{suffix}{LOG_SUFFIX}")
        suffix += 1
    return path


def append_entry(log_path: Path, entry: Union[_LogEntry, dict[str, Any]]) -> None:
    append_jsonl(log_path, entry if isinstance(entry, dict) else entry.to_dict())


def read_log(log_path: Path) -> list[dict[str, Any]]:
    """Read all entries, skipping lines that are not JSON objects."""
    if not log_path.exists():
        return []
    entries: list[dict[str, Any]] = []
    with open(log_path, "r", encoding="utf-8", errors="replace") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed log line %s:%d", log_path, line_number)
                continue
            if isinstance(entry, dict):
                entries.append(entry)
    return entries


def list_sessions(logs_root: Path, project_path: Optional[Union[str, Path]] = None) -> list[Path]:
    """Session logs newest first, for one project or for all of them."""
    root = Path(logs_root)
    if project_path is not None:
        dirs = [root / project_name(str(project_path))]
    else:
        dirs = [path for path in root.iterdir() if path.is_dir()] if root.is_dir() else []
    paths = [path for directory in dirs if directory.is_dir() for path in directory.glob(f"*{LOG_SUFFIX}")]
    return sorted(paths, key=lambda path: path.stat().st_mtime, reverse=True)


@dataclass
class SessionSummary:
    path: str
    status: str
    iterations: int
    reason: Optional[str] = None
    git_branch: Optional[str] = None
    total_fixes: int = 0
    total_skipped: int = 0
    priority_counts: dict[str, int] = field(default_factory=lambda: {p: 0 for p in PRIORITIES})
    stop_iteration: Optional[bool] = None
    total_duration: Optional[float] = None
    session_id: Optional[str] = None
    project_path: Optional[str] = None
    ended: bool = False


def summarize_session(log_path: Path) -> SessionSummary:
    """Aggregate a session log into status, fix counts, and duration.

    Status comes from the ``session_end`` entry when present; otherwise it is
    derived from the last iteration (an error means failed or interrupted).
    """
    entries = read_log(log_path)
    system = next((e for e in entries if e.get("type") == "system"), {})
    iterations = [e for e in entries if e.get("type") == "iteration"]
    end = next((e for e in reversed(entries) if e.get("type") == "session_end"), None)

    summary = SessionSummary(
        path=str(log_path),
        status="unknown",
        iterations=len(iterations),
        git_branch=system.get("gitBranch"),
        session_id=system.get("sessionId"),
        project_path=system.get("projectPath"),
    )
    for entry in iterations:
        fixes = entry.get("fixes")
        if isinstance(fixes, dict):
            applied = fixes.get("fixes") if isinstance(fixes.get("fixes"), list) else []
            skipped = fixes.get("skipped") if isinstance(fixes.get("skipped"), list) else []
            summary.total_fixes += len(applied)
            summary.total_skipped += len(skipped)
            for fix in applied:
                priority = fix.get("priority") if isinstance(fix, dict) else None
                if priority in summary.priority_counts:
                    summary.priority_counts[priority] += 1
        duration = entry.get("duration")
        if isinstance(duration, (int, float)):
            summary.total_duration = (summary.total_duration or 0.0) + float(duration)

    if iterations:
        last_fixes = iterations[-1].get("fixes")
        if isinstance(last_fixes, dict) and isinstance(last_fixes.get("stop_iteration"), bool):
            summary.stop_iteration = last_fixes["stop_iteration"]

    if end is not None:
        summary.ended = True
        summary.status = str(end.get("status") or "unknown")
        summary.reason = end.get("reason")
        return summary
    if iterations:
        error = iterations[-1].get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or "")
            summary.status = "interrupted" if "interrupt" in message.lower() else "failed"
            summary.reason = message or None
        else:
            summary.status = "running"
    return summary


def mark_running_sessions(summaries: list[SessionSummary], active_locks: list[LockRecord]) -> None:
    """Reconcile unfinished session summaries with the live session locks.

    A summary without a ``session_end`` entry becomes ``running`` when a live
    lock matches it (by session id, or by project and branch for logs without
    one; the newest such log wins). An unfinished summary that looked running,
    or had no iterations yet, but has no live lock is marked ``stale``.
    Its process died before writing ``session_end``.
    """
    claimed: set[int] = set()
    for lock in active_locks:
        for index, summary in enumerate(summaries):
            if summary.ended or index in claimed:
                continue
            if session_matches_lock(lock, summary.session_id, summary.project_path, summary.git_branch):
                summary.status = "running"
                claimed.add(index)
                break
    for index, summary in enumerate(summaries):
        if not summary.ended and index not in claimed and summary.status in ("running", "unknown"):
            summary.status = "stale"
            summary.reason = summary.reason or "No live session lock; the run ended without a session_end entry"
