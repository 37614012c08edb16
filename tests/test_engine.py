from __future__ import annotations

import json
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import pytest

from review_loop.config import AgentSettings, RetryConfig, ReviewLoopConfig
from review_loop.runtime.domain.models import LockRecord, RollbackRecord
from review_loop.runtime.orchestrator.checkpoint import CheckpointError, CheckpointHandle
from review_loop.runtime.orchestrator.engine import CycleEngine, determine_cycle_result, should_stop
from review_loop.runtime.orchestrator.protocol import delimiters_for
from review_loop.runtime.domain.schemas import FixSummary
from review_loop.runtime.storage.session_lock import acquire_session_lock, lock_path_for
from review_loop.runtime.storage.session_log import read_log
from review_loop.workers.run import AgentRunResult

FINDING = {
    "title": "Unchecked None",
    "body": "user can be None",
    "confidence_score": 0.9,
    "priority": 1,
    "code_location": {"absolute_file_path": "/repo/app.py", "line_range": {"start": 1, "end": 2}},
}


def review_output(findings: int = 1) -> str:
    payload = {
        "findings": [FINDING] * findings,
        "overall_correctness": "patch is incorrect" if findings else "patch is correct",
        "overall_explanation": "explanation",
        "overall_confidence_score": 0.8,
    }
    tokens = delimiters_for("reviewer")
    return f"Reviewed.\n{tokens.start}\n{json.dumps(payload)}\n{tokens.end}\n"


def fix_output(
    decision: str = "APPLY_MOST", stop: Optional[bool] = False, fixes: int = 1, skipped: tuple = ()
) -> str:
    payload = {
        "decision": decision,
        "stop_iteration": stop,
        "fixes": [
            {"id": 1, "title": "Unchecked None", "priority": "P1", "claim": "c", "evidence": "e", "fix": "guard"}
        ]
        * fixes,
        "skipped": [{"id": 10 + i, "title": "t", "reason": reason} for i, reason in enumerate(skipped)],
    }
    tokens = delimiters_for("fixer")
    return f"Fixed.\n{tokens.start}\n{json.dumps(payload)}\n{tokens.end}\n"


def ok(output: str) -> AgentRunResult:
    return AgentRunResult(exit_code=0, output=output, duration_seconds=0.01, stdout=output)


def failed(output: str = "crashed", exit_code: int = 1) -> AgentRunResult:
    return AgentRunResult(exit_code=exit_code, output=output, duration_seconds=0.01, stdout=output)


class ScriptedRunner:
    """Returns queued results per role and records every prompt."""

    def __init__(self, **scripts: list) -> None:
        self.scripts = {role.replace("_", "-"): list(items) for role, items in scripts.items()}
        self.calls: list[tuple[str, str]] = []

    def __call__(self, settings, role, prompt, *, cwd, timeout_seconds, cancel_event=None) -> AgentRunResult:
        self.calls.append((role, prompt))
        queue = self.scripts.get(role) or []
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        return item(cancel_event) if callable(item) else item

    def roles(self) -> list[str]:
        return [role for role, _ in self.calls]


class FakeCheckpointer:
    def __init__(self, fail_checkpoint: bool = False, fail_rollback: bool = False) -> None:
        self.fail_checkpoint = fail_checkpoint
        self.fail_rollback = fail_rollback
        self.checkpoints = 0
        self.rollbacks = 0

    def checkpoint(self) -> CheckpointHandle:
        if self.fail_checkpoint:
            raise CheckpointError("git checkpoint failed: index locked")
        self.checkpoints += 1
        return CheckpointHandle(head="abc", index_tree="i", snapshot_tree="s")

    def rollback(self, handle: CheckpointHandle) -> RollbackRecord:
        self.rollbacks += 1
        if self.fail_rollback:
            return RollbackRecord(attempted=True, success=False, reason="read-tree failed")
        return RollbackRecord(attempted=True, success=True)


def make_config(**overrides) -> ReviewLoopConfig:
    base = dict(
        reviewer=AgentSettings(agent="opencode"),
        fixer=AgentSettings(agent="opencode"),
        max_iterations=3,
        iteration_timeout_seconds=60,
        retry=RetryConfig(max_retries=1, base_delay_ms=1, max_delay_ms=2),
        heartbeat_seconds=0.05,
    )
    base.update(overrides)
    return ReviewLoopConfig(**base)


def make_engine(tmp_path: Path, runner: ScriptedRunner, checkpointer=None, **kwargs) -> CycleEngine:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    config = kwargs.pop("config", None) or make_config()
    return CycleEngine(
        config,
        project,
        logs_root=tmp_path / "logs",
        branch="main",
        runner=runner,
        checkpointer=checkpointer or FakeCheckpointer(),
        **kwargs,
    )


def entries_of(result, kind: str) -> list[dict]:
    return [entry for entry in read_log(Path(result.session_path)) if entry["type"] == kind]


# Pure decisions


def fix_summary(stop: Optional[bool], fixes: int = 0, skipped: tuple = (), decision: str = "APPLY_MOST") -> FixSummary:
    return FixSummary.model_validate(json.loads(fix_output(decision, stop, fixes, skipped).split("\n")[2]))


@pytest.mark.parametrize(
    "fixes, skipped, expected",
    [
        (0, (), True),
        (0, ("SKIP: style only",), True),
        (1, (), False),
        (0, ("NEED INFO: which API version?",), False),
        (0, ("  need info: which API version?",), False),
    ],
)
def test_should_stop_requires_no_fixes_and_no_open_questions(fixes: int, skipped: tuple, expected: bool) -> None:
    for decision in ("NO_CHANGES_NEEDED", "APPLY_SELECTIVELY", "NEED_INFO"):
        assert should_stop(fix_summary(None, fixes, skipped, decision)) is expected


def test_no_changes_needed_with_open_question_does_not_stop() -> None:
    summary = fix_summary(None, skipped=("NEED INFO: which API version?",), decision="NO_CHANGES_NEEDED")
    assert not should_stop(summary)
    assert summary.is_consistent()


@pytest.mark.parametrize(
    "stop, fixes, skipped, consistent",
    [
        (None, 1, (), True),
        (True, 0, (), True),
        (False, 1, (), True),
        (False, 0, ("NEED INFO: which API version?",), True),
        (True, 1, (), False),
        (True, 0, ("NEED INFO: which API version?",), False),
        (False, 0, (), False),
        (False, 0, ("SKIP: style only",), False),
    ],
)
def test_stop_iteration_must_agree_with_computed_rule(stop, fixes: int, skipped: tuple, consistent: bool) -> None:
    assert fix_summary(stop, fixes, skipped).is_consistent() is consistent


@pytest.mark.parametrize(
    "args, expected",
    [
        ((True, 2, 5, True), (False, "Interrupted", "Review cycle was interrupted")),
        ((False, 5, 5, True), (False, "Interrupted", "Review cycle was interrupted")),
        ((False, 1, 5, False), (True, "Completed", "No issues found - code is clean")),
        ((True, 5, 5, False), (False, "Completed", "Max iterations (5) reached - some issues may remain")),
        ((True, 2, 5, False), (False, "Failed", "Review cycle ended unexpectedly")),
    ],
)
def test_determine_cycle_result(args: tuple, expected: tuple) -> None:
    result = determine_cycle_result(*args)
    assert (result.success, result.final_status, result.reason) == expected
    assert result.iterations == args[1]


# Full cycles


def test_clean_review_completes_in_one_iteration(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output(findings=0))])
    checkpointer = FakeCheckpointer()
    engine = make_engine(tmp_path, runner, checkpointer)
    result = engine.run()

    assert result.success
    assert result.final_status == "Completed"
    assert result.reason == "No issues found - code is clean"
    assert result.iterations == 1
    assert runner.roles() == ["reviewer"]
    assert checkpointer.checkpoints == 0

    log = read_log(Path(result.session_path))
    assert [entry["type"] for entry in log] == ["system", "iteration", "session_end"]
    assert log[0]["gitBranch"] == "main"
    assert log[-1]["status"] == "completed"
    assert not lock_path_for(tmp_path / "logs", engine.project_dir, "main").exists()


def test_fixer_stop_signal_ends_cycle(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        reviewer=[ok(review_output())],
        fixer=[ok(fix_output(decision="NO_CHANGES_NEEDED", stop=True, fixes=0))],
    )
    result = make_engine(tmp_path, runner).run()
    assert result.success
    assert result.final_status == "Completed"
    assert result.iterations == 1
    assert runner.roles() == ["reviewer", "fixer"]
    iteration = entries_of(result, "iteration")[0]
    assert iteration["review"]["findings"][0]["id"] == 1
    assert iteration["fixes"]["stop_iteration"] is True


def test_fixer_prompt_contains_review(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        reviewer=[ok(review_output())],
        fixer=[ok(fix_output(decision="NO_CHANGES_NEEDED", stop=True, fixes=0))],
    )
    make_engine(tmp_path, runner).run()
    fixer_prompt = runner.calls[1][1]
    assert "Unchecked None" in fixer_prompt
    assert delimiters_for("fixer").start in fixer_prompt


def test_max_iterations_reached(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output())], fixer=[ok(fix_output())])
    checkpointer = FakeCheckpointer()
    result = make_engine(tmp_path, runner, checkpointer).run()

    assert not result.success
    assert result.final_status == "Completed"
    assert result.reason == "Max iterations (3) reached - some issues may remain"
    assert result.iterations == 3
    assert checkpointer.checkpoints == 3
    assert checkpointer.rollbacks == 0
    assert [entry["iteration"] for entry in entries_of(result, "iteration")] == [1, 2, 3]


def test_force_max_iterations_ignores_stop_signal(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output())], fixer=[ok(fix_output(stop=True, fixes=0))])
    result = make_engine(tmp_path, runner, force_max_iterations=True).run()
    assert result.iterations == 3
    assert result.reason.startswith("Max iterations (3)")


def test_malformed_output_is_retried_with_reminder(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok("I could not decide."), ok(review_output(findings=0))])
    result = make_engine(tmp_path, runner).run()
    assert result.success
    assert len(runner.calls) == 2
    assert "IMPORTANT: Your previous response was missing or invalid" not in runner.calls[0][1]
    assert "IMPORTANT: Your previous response was missing or invalid" in runner.calls[1][1]


def test_reviewer_retry_exhaustion_fails_with_phase_and_attempts(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[failed("model overloaded", exit_code=2)])
    result = make_engine(tmp_path, runner).run()
    assert not result.success
    assert result.final_status == "Failed"
    assert "reviewer failed after 2 attempt(s)" in result.reason
    assert "model overloaded" in result.reason
    error = entries_of(result, "iteration")[0]["error"]
    assert error == {"phase": "reviewer", "message": result.reason, "exitCode": 2, "attempts": 2}
    assert entries_of(result, "session_end")[0]["status"] == "failed"


def test_fixer_failure_rolls_back(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output())], fixer=[failed("segfault")])
    checkpointer = FakeCheckpointer()
    result = make_engine(tmp_path, runner, checkpointer).run()
    assert result.final_status == "Failed"
    assert "fixer failed after 2 attempt(s)" in result.reason
    assert checkpointer.rollbacks == 1
    iteration = entries_of(result, "iteration")[0]
    assert iteration["rollback"] == {"attempted": True, "success": True}


def test_fixer_failure_with_failed_rollback_mentions_both(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output())], fixer=[failed("segfault")])
    result = make_engine(tmp_path, runner, FakeCheckpointer(fail_rollback=True)).run()
    assert result.final_status == "Failed"
    assert "rollback failed: read-tree failed" in result.reason


def test_checkpoint_failure_aborts_before_fixer(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output())], fixer=[ok(fix_output())])
    result = make_engine(tmp_path, runner, FakeCheckpointer(fail_checkpoint=True)).run()
    assert result.final_status == "Failed"
    assert "index locked" in result.reason
    assert runner.roles() == ["reviewer"]


def test_inconsistent_fix_summary_is_rolled_back_and_loop_continues(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        reviewer=[ok(review_output()), ok(review_output(findings=0))],
        fixer=[ok(fix_output(stop=True, fixes=1))],
    )
    checkpointer = FakeCheckpointer()
    result = make_engine(tmp_path, runner, checkpointer).run()
    assert result.success
    assert result.iterations == 2
    assert checkpointer.rollbacks == 1
    first = entries_of(result, "iteration")[0]
    assert first["error"]["phase"] == "verification"
    assert first["rollback"]["success"] is True


def test_open_question_keeps_loop_running_despite_no_changes_decision(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        reviewer=[ok(review_output()), ok(review_output(findings=0))],
        fixer=[
            ok(
                fix_output(
                    decision="NO_CHANGES_NEEDED",
                    stop=None,
                    fixes=0,
                    skipped=("NEED INFO: which API version?",),
                )
            )
        ],
    )
    result = make_engine(tmp_path, runner).run()
    assert result.reason == "No issues found - code is clean"
    assert result.iterations == 2
    assert runner.roles() == ["reviewer", "fixer", "reviewer"]


def test_stop_false_with_nothing_left_is_rejected_as_inconsistent(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        reviewer=[ok(review_output()), ok(review_output(findings=0))],
        fixer=[ok(fix_output(decision="APPLY_SELECTIVELY", stop=False, fixes=0, skipped=("SKIP: style only",)))],
    )
    checkpointer = FakeCheckpointer()
    result = make_engine(tmp_path, runner, checkpointer).run()
    assert result.iterations == 2
    assert checkpointer.rollbacks == 1
    error = entries_of(result, "iteration")[0]["error"]
    assert error["phase"] == "verification"
    assert "stop_iteration=False" in error["message"]


def test_verify_command_failure_triggers_rollback(tmp_path: Path) -> None:
    runner = ScriptedRunner(reviewer=[ok(review_output()), ok(review_output(findings=0))], fixer=[ok(fix_output())])
    checkpointer = FakeCheckpointer()
    config = make_config(verify_command="echo tests broke && exit 4")
    result = make_engine(tmp_path, runner, checkpointer, config=config).run()
    assert result.success
    assert checkpointer.rollbacks == 1
    error = entries_of(result, "iteration")[0]["error"]
    assert error["exitCode"] == 4
    assert "tests broke" in error["message"]


def test_interrupt_during_fixer_rolls_back_and_reports_interrupted(tmp_path: Path) -> None:
    def interrupted_fix(cancel_event: threading.Event) -> AgentRunResult:
        cancel_event.set()
        return AgentRunResult(exit_code=130, output="", duration_seconds=0.0, cancelled=True)

    runner = ScriptedRunner(reviewer=[ok(review_output())], fixer=[interrupted_fix])
    checkpointer = FakeCheckpointer()
    result = make_engine(tmp_path, runner, checkpointer).run()
    assert not result.success
    assert result.final_status == "Interrupted"
    assert result.reason == "Review cycle was interrupted"
    assert checkpointer.rollbacks == 1
    assert entries_of(result, "session_end")[0]["status"] == "interrupted"


def test_interrupt_before_start(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    runner = ScriptedRunner(reviewer=[ok(review_output())])
    result = make_engine(tmp_path, runner, cancel_event=cancel).run()
    assert result.final_status == "Interrupted"
    assert runner.calls == []


def test_live_lock_reports_busy(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    holder = acquire_session_lock(tmp_path / "logs", project, "main", "other-session", session_name="other run")
    runner = ScriptedRunner(reviewer=[ok(review_output())])
    result = make_engine(tmp_path, runner).run()
    assert not result.success
    assert result.final_status == "Failed"
    assert result.reason.startswith("busy:")
    assert isinstance(result.conflict, LockRecord)
    assert result.conflict.session_id == "other-session"
    assert runner.calls == []
    holder.release()


def test_unexpected_exception_is_contained(tmp_path: Path) -> None:
    def explode(settings, role, prompt, **kwargs):
        raise RuntimeError("kaboom")

    engine = make_engine(tmp_path, ScriptedRunner())
    engine.runner = explode
    result = engine.run()
    assert result.final_status == "Failed"
    assert "kaboom" in result.reason
    assert not lock_path_for(tmp_path / "logs", engine.project_dir, "main").exists()


def test_simplifier_failure_is_not_fatal(tmp_path: Path) -> None:
    runner = ScriptedRunner(code_simplifier=[failed("no")], reviewer=[ok(review_output(findings=0))])
    config = make_config(simplifier=True, retry=RetryConfig(max_retries=0, base_delay_ms=1, max_delay_ms=1))
    result = make_engine(tmp_path, runner, config=config).run()
    assert result.success
    assert runner.roles() == ["code-simplifier", "reviewer"]


def test_status_callback_sees_each_phase(tmp_path: Path) -> None:
    seen: list[str] = []
    runner = ScriptedRunner(
        reviewer=[ok(review_output())],
        fixer=[ok(fix_output(decision="NO_CHANGES_NEEDED", stop=True, fixes=0))],
    )
    make_engine(tmp_path, runner, on_status=lambda state: seen.append(state.status)).run()
    assert seen == ["Reviewing", "Checkpointing", "Fixing", "Deciding", "Completed"]


def test_heartbeat_advances_while_agent_call_is_slow(tmp_path: Path) -> None:
    lock_path = lock_path_for(tmp_path / "logs", (tmp_path / "project").resolve(), "main")
    observed: list[str] = []

    def slow_review(cancel_event: threading.Event) -> AgentRunResult:
        observed.append(json.loads(lock_path.read_text(encoding="utf-8"))["lastHeartbeat"])
        deadline = time.monotonic() + 0.4
        while time.monotonic() < deadline:
            time.sleep(0.02)
        observed.append(json.loads(lock_path.read_text(encoding="utf-8"))["lastHeartbeat"])
        return ok(review_output(findings=0))

    runner = ScriptedRunner(reviewer=[slow_review])
    result = make_engine(tmp_path, runner).run()
    assert result.success
    assert len(observed) == 2
    assert datetime.fromisoformat(observed[1]) > datetime.fromisoformat(observed[0])
