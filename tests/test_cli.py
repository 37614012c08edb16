from __future__ import annotations

import json
from pathlib import Path

import pytest

from review_loop import cli
from review_loop.runtime.domain.models import CycleResult
from review_loop.runtime.storage.session_lock import LockHandle, acquire_session_lock, lock_path_for


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        "reviewer:\n  agent: codex\nfixer:\n  agent: claude\nmax_iterations: 4\n",
        encoding="utf-8",
    )
    return path


def test_status_without_sessions(tmp_path: Path, capsys) -> None:
    assert cli.main(["--logs-dir", str(tmp_path / "logs"), "status"]) == 0
    assert "No active review sessions." in capsys.readouterr().out


def test_status_lists_live_session_as_json(tmp_path: Path, capsys) -> None:
    project = tmp_path / "project"
    project.mkdir()
    handle = acquire_session_lock(tmp_path / "logs", project, None, "abc", session_name="nightly")
    assert isinstance(handle, LockHandle)
    try:
        assert cli.main(["--logs-dir", str(tmp_path / "logs"), "--json", "status"]) == 0
        sessions = json.loads(capsys.readouterr().out)
        assert [s["sessionId"] for s in sessions] == ["abc"]
    finally:
        handle.release()


def test_stop_releases_project_lock(tmp_path: Path, capsys) -> None:
    project = tmp_path / "project"
    project.mkdir()
    logs = tmp_path / "logs"
    acquire_session_lock(logs, project, None, "abc")
    assert cli.main(["--logs-dir", str(logs), "stop", "--project-dir", str(project)]) == 0
    assert not lock_path_for(logs, project).exists()
    assert cli.main(["--logs-dir", str(logs), "stop", "--project-dir", str(project)]) == 1


def test_stop_all(tmp_path: Path, capsys) -> None:
    logs = tmp_path / "logs"
    for name in ("a", "b"):
        (tmp_path / name).mkdir()
        acquire_session_lock(logs, tmp_path / name, None, f"session-{name}")
    assert cli.main(["--logs-dir", str(logs), "stop", "--all"]) == 0
    assert "Removed 2 lock file(s)." in capsys.readouterr().out


def test_run_requires_config(tmp_path: Path, capsys) -> None:
    code = cli.main(["--config", str(tmp_path / "missing.yaml"), "run", "--project-dir", str(tmp_path)])
    assert code == 2
    assert "No configuration found" in capsys.readouterr().err


def test_run_passes_overrides_to_engine(tmp_path: Path, config_file: Path, monkeypatch, capsys) -> None:
    captured: dict = {}

    class FakeEngine:
        def __init__(self, config, project_dir, **kwargs) -> None:
            captured["config"] = config
            captured["project_dir"] = project_dir
            captured.update(kwargs)

        def run(self) -> CycleResult:
            return CycleResult(True, "Completed", "No issues found - code is clean", "/logs/s.jsonl", 1)

    monkeypatch.setattr(cli, "CycleEngine", FakeEngine)
    code = cli.main(
        [
            "--config",
            str(config_file),
            "--logs-dir",
            str(tmp_path / "logs"),
            "run",
            "--project-dir",
            str(tmp_path),
            "--commit",
            "abc123",
            "--max-iterations",
            "2",
            "--quiet",
        ]
    )
    assert code == 0
    assert captured["config"].max_iterations == 2
    assert captured["review_options"].commit_sha == "abc123"
    assert captured["logs_root"] == tmp_path / "logs"
    assert captured["echo"] is False
    assert "Completed: No issues found - code is clean" in capsys.readouterr().out


def test_run_exit_codes(tmp_path: Path, config_file: Path, monkeypatch) -> None:
    results = iter(
        [
            CycleResult(False, "Interrupted", "Review cycle was interrupted", None, 1),
            CycleResult(False, "Completed", "Max iterations (4) reached - some issues may remain", None, 4),
        ]
    )

    class FakeEngine:
        def __init__(self, *args, **kwargs) -> None:
            pass

        def run(self) -> CycleResult:
            return next(results)

    monkeypatch.setattr(cli, "CycleEngine", FakeEngine)
    argv = ["--config", str(config_file), "run", "--project-dir", str(tmp_path), "-q"]
    assert cli.main(argv) == 130
    assert cli.main(argv) == 1


def test_logs_summarizes_sessions(tmp_path: Path, capsys) -> None:
    from review_loop.runtime.domain.models import IterationEntry, SessionEndEntry
    from review_loop.runtime.storage.session_log import append_entry, create_session_log

    project = tmp_path / "project"
    project.mkdir()
    logs = tmp_path / "logs"
    path = create_session_log(logs, project.resolve(), "main")
    append_entry(path, IterationEntry(iteration=1, fixes={"fixes": [{"priority": "P1"}], "skipped": []}))
    append_entry(path, SessionEndEntry(status="completed", reason="done", iterations=1))

    assert cli.main(["--logs-dir", str(logs), "logs", "--project-dir", str(project)]) == 0
    out = capsys.readouterr().out
    assert "completed, 1 iteration(s), 1 fixed, 0 skipped (P1=1)" in out
    assert "  done" in out


def test_logs_marks_live_and_abandoned_sessions(tmp_path: Path, capsys) -> None:
    from review_loop.runtime.domain.models import IterationEntry, SystemEntry
    from review_loop.runtime.storage.session_log import append_entry, create_session_log

    project = tmp_path / "project"
    project.mkdir()
    logs = tmp_path / "logs"

    def unfinished(session_id: str) -> Path:
        path = create_session_log(logs, project.resolve(), "main")
        append_entry(
            path,
            SystemEntry(
                project_path=str(project.resolve()),
                reviewer={"agent": "codex"},
                fixer={"agent": "claude"},
                max_iterations=3,
                git_branch="main",
                session_id=session_id,
            ),
        )
        append_entry(path, IterationEntry(iteration=1))
        return path

    live_log = unfinished("live-session")
    crashed_log = unfinished("crashed-session")
    handle = acquire_session_lock(logs, project, "main", "live-session")
    assert isinstance(handle, LockHandle)
    try:
        assert cli.main(["--logs-dir", str(logs), "--json", "logs", "--project-dir", str(project)]) == 0
    finally:
        handle.release()

    statuses = {Path(item["path"]).name: item["status"] for item in json.loads(capsys.readouterr().out)}
    assert statuses == {live_log.name: "running", crashed_log.name: "stale"}
