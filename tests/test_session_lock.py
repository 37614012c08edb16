from __future__ import annotations

import json
import os
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from review_loop.runtime.domain.models import LockRecord
from review_loop.runtime.storage.session_lock import (
    LockConflict,
    LockHandle,
    acquire_session_lock,
    is_lock_live,
    list_active_sessions,
    lock_path_for,
    read_lock,
    release_session_lock,
    remove_all_locks,
    session_matches_lock,
)

# Linux caps pids at 2**22, so this one never belongs to a live process.
DEAD_PID = 2**22 + 4242


def _write_foreign_lock(
    path: Path,
    *,
    project: Path,
    pid: int,
    heartbeat_age: float = 0.0,
    session_id: str = "other-session",
    branch: str = "default",
) -> None:
    heartbeat = (datetime.now(timezone.utc) - timedelta(seconds=heartbeat_age)).isoformat()
    record = LockRecord(
        session_id=session_id,
        session_name="other",
        project_path=os.path.realpath(project),
        branch=branch,
        pid=pid,
        last_heartbeat=heartbeat,
        state="running",
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record.to_dict()), encoding="utf-8")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "My Project"
    path.mkdir()
    return path


@pytest.fixture
def logs_root(tmp_path: Path) -> Path:
    return tmp_path / "logs"


def test_acquire_writes_camel_case_record(logs_root: Path, project: Path) -> None:
    handle = acquire_session_lock(logs_root, project, None, "session-1", session_name="first")
    assert isinstance(handle, LockHandle)
    data = json.loads(handle.path.read_text(encoding="utf-8"))
    assert data["sessionId"] == "session-1"
    assert data["sessionName"] == "first"
    assert data["pid"] == os.getpid()
    assert data["projectPath"] == os.path.realpath(project)
    assert data["branch"] == "default"
    assert data["state"] == "pending"
    assert data["mode"] == "foreground"
    assert "lastHeartbeat" in data and "startTime" in data
    assert handle.release()
    assert not handle.path.exists()


def test_lock_path_includes_branch(logs_root: Path, project: Path) -> None:
    default_path = lock_path_for(logs_root, project)
    branch_path = lock_path_for(logs_root, project, "feature/Login")
    assert default_path.name.endswith(".lock")
    assert re.fullmatch(r".*my-project__feature-login-[0-9a-f]{8}\.lock", branch_path.name)
    assert lock_path_for(logs_root, project, "default") == default_path
    assert lock_path_for(logs_root, project, "  ") == default_path


def test_second_acquire_conflicts_with_live_holder(logs_root: Path, project: Path) -> None:
    first = acquire_session_lock(logs_root, project, None, "session-1")
    assert isinstance(first, LockHandle)
    second = acquire_session_lock(logs_root, project, None, "session-2")
    assert isinstance(second, LockConflict)
    assert second.record.session_id == "session-1"
    first.release()


def test_different_branches_do_not_conflict(logs_root: Path, project: Path) -> None:
    main = acquire_session_lock(logs_root, project, "main", "session-1")
    feature = acquire_session_lock(logs_root, project, "feature", "session-2")
    assert isinstance(main, LockHandle)
    assert isinstance(feature, LockHandle)
    main.release()
    feature.release()


def test_stale_heartbeat_is_reclaimed(logs_root: Path, project: Path) -> None:
    path = lock_path_for(logs_root, project)
    _write_foreign_lock(path, project=project, pid=os.getpid(), heartbeat_age=120)
    handle = acquire_session_lock(logs_root, project, None, "session-new", stale_after_seconds=60)
    assert isinstance(handle, LockHandle)
    assert read_lock(logs_root, project).session_id == "session-new"
    handle.release()


def test_dead_pid_is_reclaimed(logs_root: Path, project: Path) -> None:
    path = lock_path_for(logs_root, project)
    _write_foreign_lock(path, project=project, pid=DEAD_PID)
    handle = acquire_session_lock(logs_root, project, None, "session-new")
    assert isinstance(handle, LockHandle)
    handle.release()


def test_unreadable_lock_is_reclaimed(logs_root: Path, project: Path) -> None:
    path = lock_path_for(logs_root, project)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{partial", encoding="utf-8")
    handle = acquire_session_lock(logs_root, project, None, "session-new")
    assert isinstance(handle, LockHandle)
    handle.release()


def test_release_refuses_foreign_session(logs_root: Path, project: Path) -> None:
    handle = acquire_session_lock(logs_root, project, None, "owner")
    assert isinstance(handle, LockHandle)
    assert not release_session_lock(handle.path, "intruder")
    assert handle.path.exists()
    assert release_session_lock(handle.path, "owner")
    assert not release_session_lock(handle.path, "owner")


def test_handle_does_not_release_after_takeover(logs_root: Path, project: Path) -> None:
    handle = acquire_session_lock(logs_root, project, None, "old-owner")
    assert isinstance(handle, LockHandle)
    _write_foreign_lock(handle.path, project=project, pid=os.getpid(), session_id="new-owner")
    assert not handle.heartbeat()
    assert not handle.release()
    assert read_lock(logs_root, project).session_id == "new-owner"


def test_update_and_heartbeat_thread(logs_root: Path, project: Path) -> None:
    handle = acquire_session_lock(logs_root, project, None, "session-1")
    assert isinstance(handle, LockHandle)
    assert handle.update(state="running", iteration=2)
    record = read_lock(logs_root, project)
    assert record.state == "running"
    assert record.iteration == 2
    before = record.last_heartbeat

    handle.start_heartbeat(0.05)
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and read_lock(logs_root, project).last_heartbeat == before:
        time.sleep(0.02)
    assert read_lock(logs_root, project).last_heartbeat != before
    with handle:
        pass
    assert not handle.path.exists()


def test_list_active_sessions_filters_dead_and_finished(logs_root: Path, tmp_path: Path) -> None:
    live_project = tmp_path / "live"
    dead_project = tmp_path / "dead"
    live_project.mkdir()
    dead_project.mkdir()
    live = acquire_session_lock(logs_root, live_project, None, "live-session")
    assert isinstance(live, LockHandle)
    _write_foreign_lock(lock_path_for(logs_root, dead_project), project=dead_project, pid=DEAD_PID)

    active = list_active_sessions(logs_root)
    assert [record.session_id for record in active] == ["live-session"]

    live.update(state="completed")
    assert list_active_sessions(logs_root) == []
    assert remove_all_locks(logs_root) == 2
    assert list_active_sessions(logs_root) == []


def test_is_lock_live_requires_fresh_heartbeat() -> None:
    record = LockRecord(session_id="s", session_name="n", project_path="/p", pid=os.getpid())
    assert is_lock_live(record)
    record.last_heartbeat = "not a timestamp"
    assert not is_lock_live(record)


def test_session_matches_lock() -> None:
    record = LockRecord(session_id="abc", session_name="n", project_path="/repo", branch="main")
    assert session_matches_lock(record, session_id="abc")
    assert not session_matches_lock(record, session_id="xyz", project_path="/repo", branch="main")
    assert session_matches_lock(record, project_path="/repo/", branch="main")
    assert not session_matches_lock(record, project_path="/repo", branch="other")
    assert not session_matches_lock(record)


def test_lock_names_do_not_collide_across_project_and_branch(logs_root: Path, tmp_path: Path) -> None:
    short = tmp_path / "x"
    long = tmp_path / "x__y"
    short.mkdir()
    long.mkdir()
    assert lock_path_for(logs_root, short, "y") != lock_path_for(logs_root, long)

    first = acquire_session_lock(logs_root, short, "y", "session-1")
    second = acquire_session_lock(logs_root, long, None, "session-2")
    assert isinstance(first, LockHandle)
    assert isinstance(second, LockHandle)


def test_guard_file_is_shared_per_logs_root(logs_root: Path, tmp_path: Path) -> None:
    for index in range(3):
        path = tmp_path / f"project-{index}"
        path.mkdir()
        handle = acquire_session_lock(logs_root, path, "main", f"session-{index}")
        assert isinstance(handle, LockHandle)
        handle.release()
    assert sorted(entry.name for entry in logs_root.iterdir()) == [".session-locks.guard"]


def test_concurrent_acquirers_get_exactly_one_handle(logs_root: Path, project: Path) -> None:
    workers = 8
    barrier = threading.Barrier(workers)
    results: list = []
    results_lock = threading.Lock()

    def contend(index: int) -> None:
        barrier.wait()
        outcome = acquire_session_lock(logs_root, project, "main", f"session-{index}")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=contend, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    handles = [outcome for outcome in results if isinstance(outcome, LockHandle)]
    conflicts = [outcome for outcome in results if isinstance(outcome, LockConflict)]
    assert len(results) == workers
    assert len(handles) == 1
    assert len(conflicts) == workers - 1
    assert {conflict.record.session_id for conflict in conflicts} == {handles[0].session_id}
    assert read_lock(logs_root, project, "main").session_id == handles[0].session_id


def test_non_positive_thresholds_are_rejected(logs_root: Path, project: Path) -> None:
    with pytest.raises(ValueError, match="stale_after_seconds"):
        acquire_session_lock(logs_root, project, None, "session-1", stale_after_seconds=0)
    handle = acquire_session_lock(logs_root, project, None, "session-1")
    assert isinstance(handle, LockHandle)
    with pytest.raises(ValueError, match="interval_seconds"):
        handle.start_heartbeat(0)
    assert isinstance(acquire_session_lock(logs_root, project, None, "session-2"), LockConflict)
    handle.release()
