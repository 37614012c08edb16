"""Per-project session locks with heartbeat liveness.

Lock files live in the logs root as ``<project>[__<branch>]-<key hash>.lock`` and
hold a camelCase JSON :class:`LockRecord`. The hash of the normalized
``(project, branch)`` key keeps distinct pairs from sharing a file when their
sanitized names coincide. A lock is created by hard-linking a fully
written temp file into place, so readers never see a partial record and two
creators cannot both succeed. Reclaiming a dead holder's lock and rewriting
heartbeats happen under one guard file per logs root so check-then-replace is
never interleaved between processes.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import psutil

from ...io_utils import (
    FileLock,
    age_seconds,
    atomic_write_json,
    load_json,
    now_iso,
    project_name,
    sanitize_for_filename,
    write_json_file,
)
from ..domain.models import DEFAULT_BRANCH, LockMode, LockRecord, LockState

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
GUARD_NAME = ".session-locks.guard"
BRANCH_SEPARATOR = "__"
DEFAULT_STALE_AFTER_SECONDS = 60.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 10.0


def normalize_project_path(project_path: Union[str, Path]) -> str:
    resolved = os.path.realpath(os.path.expanduser(str(project_path)))
    if len(resolved) > 1:
        resolved = resolved.rstrip(os.sep)
    return resolved


def normalize_branch(branch: Optional[str]) -> str:
    """Blank branches and the literal ``"default"`` both mean "no branch"."""
    text = (branch or "").strip()
    return text or DEFAULT_BRANCH


def lock_display_name(project_path: Union[str, Path], branch: Optional[str] = None) -> str:
    name = project_name(normalize_project_path(project_path))
    branch_name = normalize_branch(branch)
    if branch_name != DEFAULT_BRANCH:
        name = f"{name}{BRANCH_SEPARATOR}{sanitize_for_filename(branch_name)}"
    return name


def lock_path_for(logs_root: Path, project_path: Union[str, Path], branch: Optional[str] = None) -> Path:
    key = f"{normalize_project_path(project_path)}\0{normalize_branch(branch)}"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
    return Path(logs_root) / f"{lock_display_name(project_path, branch)}-{digest}{LOCK_SUFFIX}"


def _guard_path(lock_path: Path) -> Path:
    return lock_path.parent / GUARD_NAME


def read_lock_file(lock_path: Path) -> Optional[LockRecord]:
    data = load_json(lock_path)
    if data is None or not data.get("sessionId"):
        return None
    record = LockRecord.from_dict(data)
    record.lock_path = str(lock_path)
    return record


def read_lock(logs_root: Path, project_path: Union[str, Path], branch: Optional[str] = None) -> Optional[LockRecord]:
    return read_lock_file(lock_path_for(logs_root, project_path, branch))


def is_process_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        return psutil.pid_exists(pid)
    except (OSError, psutil.Error):
        logger.debug("Could not probe pid %s", pid, exc_info=True)
        return False


def is_lock_live(record: LockRecord, stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS) -> bool:
    """A holder is live while its heartbeat is fresh and its process still exists."""
    if record.state in ("completed", "failed"):
        return False
    age = age_seconds(record.last_heartbeat)
    if age is None or age >= stale_after_seconds:
        return False
    return is_process_running(record.pid)


def session_matches_lock(
    record: LockRecord,
    session_id: Optional[str] = None,
    project_path: Optional[Union[str, Path]] = None,
    branch: Optional[str] = None,
) -> bool:
    """Match by session id when both sides have one, otherwise by project and branch."""
    if session_id and record.session_id:
        return session_id == record.session_id
    if project_path is None:
        return False
    return normalize_project_path(record.project_path) == normalize_project_path(project_path) and normalize_branch(
        record.branch
    ) == normalize_branch(branch)


@dataclass
class LockConflict:
    """Returned instead of a handle when a live session already holds the lock."""

    record: LockRecord


class HeartbeatThread(threading.Thread):
    """Refreshes a lock's heartbeat until stopped or until the lock is lost."""

    def __init__(self, handle: "LockHandle", interval_seconds: float) -> None:
        super().__init__(name=f"lock-heartbeat-{handle.session_id[:8]}", daemon=True)
        self._handle = handle
        self._interval = interval_seconds
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                if not self._handle.heartbeat():
                    logger.warning("Session lock %s is no longer ours; heartbeat stopped", self._handle.path)
                    return
            except OSError:
                logger.debug("Heartbeat write failed for %s", self._handle.path, exc_info=True)

    def stop(self) -> None:
        self._stop_event.set()


class LockHandle:
    """Ownership of one acquired session lock."""

    def __init__(self, path: Path, record: LockRecord) -> None:
        self.path = path
        self.record = record
        self._heartbeat: Optional[HeartbeatThread] = None

    @property
    def session_id(self) -> str:
        return self.record.session_id

    def _rewrite(self, state: Optional[LockState] = None, iteration: Optional[int] = None) -> bool:
        with FileLock(_guard_path(self.path)):
            current = read_lock_file(self.path)
            if current is None or current.session_id != self.session_id:
                return False
            if state is not None:
                self.record.state = state
            if iteration is not None:
                self.record.iteration = iteration
            self.record.last_heartbeat = now_iso()
            atomic_write_json(self.path, self.record.to_dict())
            return True

    def heartbeat(self) -> bool:
        """Refresh ``lastHeartbeat``; ``False`` when the lock now belongs to someone else."""
        return self._rewrite()

    def update(self, *, state: Optional[LockState] = None, iteration: Optional[int] = None) -> bool:
        return self._rewrite(state=state, iteration=iteration)

    def start_heartbeat(self, interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds!r}")
        if self._heartbeat is not None and self._heartbeat.is_alive():
            return
        self._heartbeat = HeartbeatThread(self, interval_seconds)
        self._heartbeat.start()

    def stop_heartbeat(self) -> None:
        if self._heartbeat is None:
            return
        self._heartbeat.stop()
        if self._heartbeat is not threading.current_thread():
            self._heartbeat.join(timeout=5)
        self._heartbeat = None

    def release(self) -> bool:
        """Delete the lock file if it still carries this session's id."""
        self.stop_heartbeat()
        return release_session_lock(self.path, self.session_id)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _link_record(lock_path: Path, record: LockRecord) -> bool:
    tmp_path = lock_path.with_name(f".{lock_path.name}.{record.session_id}.{os.getpid()}.tmp")
    write_json_file(tmp_path, record.to_dict())
    try:
        os.link(tmp_path, lock_path)
        return True
    except FileExistsError:
        return False
    finally:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass


def _discard(lock_path: Path) -> None:
    aside = lock_path.with_name(f".{lock_path.name}.stale-{uuid.uuid4().hex[:8]}")
    try:
        os.replace(lock_path, aside)
    except FileNotFoundError:
        return
    aside.unlink()


def acquire_session_lock(
    logs_root: Path,
    project_path: Union[str, Path],
    branch: Optional[str],
    session_id: str,
    *,
    session_name: Optional[str] = None,
    mode: LockMode = "foreground",
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
) -> Union[LockHandle, LockConflict]:
    """Take the lock for ``(project_path, branch)`` or report who holds it.

    Dead or stale holders (heartbeat older than ``stale_after_seconds`` or pid
    gone) and unreadable lock files are reclaimed.
    """
    if stale_after_seconds <= 0:
        raise ValueError(f"stale_after_seconds must be positive, got {stale_after_seconds!r}")
    logs_root = Path(logs_root)
    logs_root.mkdir(parents=True, exist_ok=True)
    project = normalize_project_path(project_path)
    branch_name = normalize_branch(branch)
    lock_path = lock_path_for(logs_root, project, branch_name)
    record = LockRecord(
        session_id=session_id,
        session_name=session_name or lock_display_name(project, branch_name),
        project_path=project,
        branch=branch_name,
        pid=os.getpid(),
        state="pending",
        mode=mode,
        lock_path=str(lock_path),
    )

    with FileLock(_guard_path(lock_path)):
        for _ in range(3):
            if _link_record(lock_path, record):
                logger.debug("Acquired session lock %s", lock_path)
                return LockHandle(lock_path, record)
            existing = read_lock_file(lock_path)
            if existing is not None and is_lock_live(existing, stale_after_seconds):
                return LockConflict(existing)
            if existing is None:
                logger.info("Reclaiming unreadable session lock %s", lock_path)
            else:
                logger.info(
                    "Reclaiming stale session lock %s (session=%s pid=%s lastHeartbeat=%s)",
                    lock_path,
                    existing.session_id,
                    existing.pid,
                    existing.last_heartbeat,
                )
            _discard(lock_path)
    raise OSError(f"Could not create session lock {lock_path}")


def release_session_lock(lock_path: Path, session_id: str) -> bool:
    with FileLock(_guard_path(lock_path)):
        current = read_lock_file(lock_path)
        if current is None:
            return False
        if current.session_id != session_id:
            logger.warning(
                "Not releasing %s: held by session %s, not %s", lock_path, current.session_id, session_id
            )
            return False
        try:
            lock_path.unlink()
        except FileNotFoundError:
            return False
        return True


def _lock_files(logs_root: Path) -> list[Path]:
    root = Path(logs_root)
    if not root.is_dir():
        return []
    return sorted(path for path in root.glob(f"*{LOCK_SUFFIX}") if path.is_file())


def list_active_sessions(
    logs_root: Path, stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS
) -> list[LockRecord]:
    active: list[LockRecord] = []
    for path in _lock_files(logs_root):
        record = read_lock_file(path)
        if record is not None and is_lock_live(record, stale_after_seconds):
            active.append(record)
    return active


def remove_all_locks(logs_root: Path) -> int:
    """Delete every lock file regardless of owner; returns how many were removed."""
    removed = 0
    for path in _lock_files(logs_root):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            continue
    return removed
