"""The review/fix cycle: review, checkpoint, fix, decide, repeat."""

from __future__ import annotations

import functools
import logging
import random
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

from ...config import AgentSettings, ReviewLoopConfig, resolve_logs_dir
from ...workers.parsers import extract_result
from ...workers.run import AgentRunResult, run_agent
from ..domain.models import (
    CycleResult,
    CycleState,
    CycleStatus,
    IterationEntry,
    IterationError,
    LockMode,
    Phase,
    RollbackRecord,
    SessionEndEntry,
    SessionEndStatus,
    SystemEntry,
)
from ..domain.schemas import FixSummary, ReviewSummary
from ..storage.session_lock import LockConflict, LockHandle, acquire_session_lock
from ..storage.session_log import append_entry, create_session_log
from .checkpoint import CheckpointError, CheckpointHandle, GitCheckpointer
from .extraction import extract
from .prompts import ReviewOptions, build_fixer_prompt, build_reviewer_prompt, build_simplifier_prompt
from .protocol import structured_output_retry_reminder
from .retry import AttemptResult, PhaseOutcome, run_phase_with_retry

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "Review cycle was interrupted"
CLEAN_REASON = "No issues found - code is clean"
UNEXPECTED_END_REASON = "Review cycle ended unexpectedly"
FIXER_STOP_REASON = "Fixer reported no remaining actionable issues"
OUTPUT_TAIL_CHARS = 500

_END_STATUS: dict[str, SessionEndStatus] = {
    "Completed": "completed",
    "Failed": "failed",
    "Interrupted": "interrupted",
}


class AgentRunner(Protocol):
    def __call__(
        self,
        settings: AgentSettings,
        role: str,
        prompt: str,
        *,
        cwd: Path,
        timeout_seconds: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> AgentRunResult: ...


class Checkpointer(Protocol):
    def checkpoint(self) -> CheckpointHandle: ...

    def rollback(self, handle: CheckpointHandle) -> RollbackRecord: ...


def should_stop(fix_summary: FixSummary) -> bool:
    """Stop when nothing was applied and nothing waits on information.

    Computed from the reported fixes and skipped entries only; ``decision``
    and the working tree never enter into it. A disagreeing
    ``stop_iteration`` is caught earlier by :meth:`FixSummary.is_consistent`.
    """
    return fix_summary.nothing_left


def determine_cycle_result(
    has_issues: bool,
    iterations: int,
    max_iterations: int,
    interrupted: bool,
    session_path: Optional[str] = None,
) -> CycleResult:
    """Classify how a cycle that left its loop ended. Interruption wins over everything else."""
    if interrupted:
        return CycleResult(False, "Interrupted", INTERRUPTED_REASON, session_path, iterations)
    if not has_issues:
        return CycleResult(True, "Completed", CLEAN_REASON, session_path, iterations)
    if iterations >= max_iterations:
        return CycleResult(
            False,
            "Completed",
            f"Max iterations ({max_iterations}) reached - some issues may remain",
            session_path,
            iterations,
        )
    return CycleResult(False, "Failed", UNEXPECTED_END_REASON, session_path, iterations)


def _output_tail(text: str) -> str:
    text = (text or "").strip()
    if len(text) > OUTPUT_TAIL_CHARS:
        return "..." + text[-OUTPUT_TAIL_CHARS:]
    return text


def _failure_detail(result: AgentRunResult, timeout_seconds: float) -> str:
    if result.timed_out:
        return f"timed out after {timeout_seconds:g}s"
    tail = _output_tail(result.output)
    return f"exit code {result.exit_code}" + (f": {tail}" if tail else "")


class CycleEngine:
    """Drive one review/fix session for a project.

    The engine holds the project's session lock for the whole run, writes a
    JSONL session log, and checkpoints the working tree before each fixer
    invocation so a failed fix can be rolled back. :meth:`run` never raises;
    every outcome is a :class:`CycleResult`.

    Args:
        config (ReviewLoopConfig): Agents, limits, retry and lock settings.
        project_dir (Path): Repository the agents work in.
        logs_root (Optional[Path]): Directory for session logs and locks.
        branch (Optional[str]): Branch used for the lock key and log name;
            detected from git when omitted.
        runner (Optional[AgentRunner]): Callable that runs one agent; defaults
            to spawning the configured CLI.
        checkpointer (Optional[Checkpointer]): Snapshot/rollback collaborator;
            defaults to git when ``project_dir`` is a repository.
        review_options (Optional[ReviewOptions]): What to review.
        force_max_iterations (bool): Ignore the fixer's stop signal.
        cancel_event (Optional[threading.Event]): Set to interrupt the run.
    """

    def __init__(
        self,
        config: ReviewLoopConfig,
        project_dir: Union[str, Path],
        *,
        logs_root: Optional[Path] = None,
        branch: Optional[str] = None,
        runner: Optional[AgentRunner] = None,
        checkpointer: Optional[Checkpointer] = None,
        review_options: Optional[ReviewOptions] = None,
        force_max_iterations: bool = False,
        cancel_event: Optional[threading.Event] = None,
        session_id: Optional[str] = None,
        session_name: Optional[str] = None,
        mode: LockMode = "foreground",
        echo: bool = False,
        rng: Optional[random.Random] = None,
        on_status: Optional[Callable[[CycleState], None]] = None,
    ) -> None:
        self.config = config
        self.project_dir = Path(project_dir).resolve()
        self.logs_root = Path(logs_root) if logs_root is not None else resolve_logs_dir(config)
        self.runner: AgentRunner = runner or functools.partial(run_agent, echo=echo)
        self.review_options = review_options or ReviewOptions()
        self.force_max_iterations = force_max_iterations
        self.cancel_event = cancel_event or threading.Event()
        self.session_id = session_id or str(uuid.uuid4())
        self.session_name = session_name
        self.mode = mode
        self.rng = rng
        self.on_status = on_status
        self.state = CycleState(max_iterations=config.max_iterations)
        self.session_path: Optional[Path] = None

        if checkpointer is None:
            git = GitCheckpointer(self.project_dir)
            if git.is_repository():
                checkpointer = git
                branch = branch if branch is not None else git.current_branch()
            else:
                logger.warning("%s is not a git repository; fixes cannot be rolled back", self.project_dir)
        self.checkpointer = checkpointer
        self.branch = branch
        self._lock: Optional[LockHandle] = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _set_status(self, status: CycleStatus) -> None:
        self.state.status = status
        logger.info("Iteration %d: %s", self.state.iteration, status)
        if self.on_status is not None:
            try:
                self.on_status(self.state)
            except Exception:
                logger.debug("Status callback failed", exc_info=True)

    def _session_path_text(self) -> Optional[str]:
        return str(self.session_path) if self.session_path is not None else None

    # Entry point

    def run(self) -> CycleResult:
        """Run the cycle to completion, failure, or interruption."""
        try:
            acquired = acquire_session_lock(
                self.logs_root,
                self.project_dir,
                self.branch,
                self.session_id,
                session_name=self.session_name,
                mode=self.mode,
                stale_after_seconds=self.config.stale_after_seconds,
            )
        except (OSError, ValueError) as exc:
            logger.exception("Could not acquire session lock")
            return CycleResult(False, "Failed", f"Could not acquire session lock: {exc}", None, 0)
        if isinstance(acquired, LockConflict):
            holder = acquired.record
            logger.warning("Session %s already holds the lock for %s", holder.session_id, holder.project_path)
            return CycleResult(
                False,
                "Failed",
                f"busy: session '{holder.session_name}' (pid {holder.pid}) is already running "
                f"for {holder.project_path} on branch {holder.branch}",
                None,
                0,
                conflict=holder,
            )

        self._lock = acquired
        result: Optional[CycleResult] = None
        try:
            acquired.start_heartbeat(self.config.heartbeat_seconds)
            result = self._run_locked()
        except Exception as exc:
            logger.exception("Review cycle crashed")
            self.state.status = "Failed"
            result = CycleResult(
                False, "Failed", f"Unexpected error: {exc}", self._session_path_text(), self.state.iteration
            )
        finally:
            self._finish(result)
        return result

    def _finish(self, result: Optional[CycleResult]) -> None:
        lock = self._lock
        self._lock = None
        try:
            if result is not None and self.session_path is not None:
                append_entry(
                    self.session_path,
                    SessionEndEntry(
                        status=_END_STATUS.get(result.final_status, "failed"),
                        reason=result.reason,
                        iterations=result.iterations,
                    ),
                )
        except OSError:
            logger.exception("Could not write session end to %s", self.session_path)
        if lock is None:
            return
        try:
            lock.stop_heartbeat()
            lock.update(state="completed" if result is not None and result.success else "failed")
        except OSError:
            logger.debug("Could not record final lock state", exc_info=True)
        try:
            lock.release()
        except OSError:
            logger.exception("Could not release session lock %s", lock.path)

    # Cycle

    def _run_locked(self) -> CycleResult:
        config = self.config
        self.session_path = create_session_log(self.logs_root, self.project_dir, self.branch)
        append_entry(
            self.session_path,
            SystemEntry(
                project_path=str(self.project_dir),
                git_branch=self.branch,
                reviewer=_settings_dict(config.reviewer),
                fixer=_settings_dict(config.fixer),
                code_simplifier=_settings_dict(config.settings_for("code-simplifier")) if config.simplifier else None,
                max_iterations=config.max_iterations,
                session_id=self.session_id,
            ),
        )
        if self._lock is not None:
            self._lock.update(state="running")
        logger.info("Session log: %s", self.session_path)

        if config.simplifier:
            self._run_simplifier()

        has_issues = True
        while self.state.iteration < config.max_iterations:
            if self.cancelled:
                return self._interrupted(has_issues)

            iteration = self.state.begin_iteration()
            if self._lock is not None:
                self._lock.update(iteration=iteration)
            started = time.monotonic()
            entry = IterationEntry(iteration=iteration)

            def record() -> None:
                entry.duration_seconds = time.monotonic() - started
                assert self.session_path is not None
                append_entry(self.session_path, entry)

            # Review
            self._set_status("Reviewing")
            review_outcome = self._run_decision_phase("reviewer", build_reviewer_prompt(self.review_options))
            if review_outcome.cancelled:
                entry.error = IterationError(phase="reviewer", message=INTERRUPTED_REASON, attempts=review_outcome.attempts)
                record()
                return self._interrupted(has_issues)
            if not review_outcome.ok:
                entry.error = review_outcome.error
                record()
                return self._failed(entry.error)
            review: ReviewSummary = review_outcome.value
            entry.review = review.model_dump(mode="json", exclude_none=True)
            has_issues = review.has_issues
            if not has_issues:
                record()
                return self._ended(determine_cycle_result(False, iteration, config.max_iterations, False))

            if self.cancelled:
                record()
                return self._interrupted(has_issues)

            # Checkpoint
            self._set_status("Checkpointing")
            handle: Optional[CheckpointHandle] = None
            if self.checkpointer is not None:
                try:
                    handle = self.checkpointer.checkpoint()
                except CheckpointError as exc:
                    entry.error = IterationError(phase="checkpoint", message=str(exc))
                    record()
                    return self._failed(entry.error)

            # Fix
            self._set_status("Fixing")
            fix_outcome = self._run_decision_phase("fixer", build_fixer_prompt(review.model_dump_json(indent=2)))
            if fix_outcome.cancelled:
                entry.error = IterationError(phase="fixer", message=INTERRUPTED_REASON, attempts=fix_outcome.attempts)
                entry.rollback = self._rollback(handle)
                record()
                return self._interrupted(has_issues)
            if not fix_outcome.ok:
                assert fix_outcome.error is not None
                entry.error = fix_outcome.error
                entry.rollback = self._rollback(handle)
                if entry.rollback is not None and not entry.rollback.success:
                    entry.error.message += f"; rollback failed: {entry.rollback.reason}"
                record()
                return self._failed(entry.error)
            fix: FixSummary = fix_outcome.value
            entry.fixes = fix.model_dump(mode="json", exclude_none=True)

            # Decide
            self._set_status("Deciding")
            verification_error = self._verify(fix)
            if verification_error is not None:
                entry.error = verification_error
                entry.rollback = self._rollback(handle)
                if entry.rollback is not None and not entry.rollback.success:
                    entry.error.message += f"; rollback failed: {entry.rollback.reason}"
                    logger.error("Iteration %d failed: %s", iteration, entry.error.message)
                else:
                    logger.warning("Iteration %d rejected: %s", iteration, entry.error.message)
                record()
                continue

            record()
            if should_stop(fix):
                if not self.force_max_iterations:
                    return self._ended(
                        CycleResult(True, "Completed", FIXER_STOP_REASON, self._session_path_text(), iteration)
                    )
                logger.info("Fixer asked to stop; continuing because max iterations are forced")

        return self._ended(
            determine_cycle_result(has_issues, self.state.iteration, config.max_iterations, self.cancelled)
        )

    def _ended(self, result: CycleResult) -> CycleResult:
        result.session_path = self._session_path_text()
        self._set_status(result.final_status)
        return result

    def _interrupted(self, has_issues: bool) -> CycleResult:
        return self._ended(
            determine_cycle_result(has_issues, self.state.iteration, self.config.max_iterations, True)
        )

    def _failed(self, error: Optional[IterationError]) -> CycleResult:
        reason = error.message if error is not None else UNEXPECTED_END_REASON
        logger.error("Review cycle failed: %s", reason)
        return self._ended(CycleResult(False, "Failed", reason, None, self.state.iteration))

    # Phases

    def _invoke(self, role: str, prompt: str) -> AgentRunResult:
        return self.runner(
            self.config.settings_for(role),
            role,
            prompt,
            cwd=self.project_dir,
            timeout_seconds=self.config.iteration_timeout_seconds,
            cancel_event=self.cancel_event,
        )

    def _run_decision_phase(self, role: Phase, prompt: str) -> PhaseOutcome:
        """Run ``role`` until it returns a valid decision object or retries run out.

        A retry that follows unusable output repeats the prompt with a reminder
        of the output protocol.
        """
        settings = self.config.settings_for(role)
        malformed = False

        def attempt(index: int) -> AttemptResult:
            nonlocal malformed
            text = prompt
            if index > 0 and malformed:
                text = f"{prompt}\n\n{structured_output_retry_reminder(role)}"
            result = self._invoke(role, text)
            if result.cancelled:
                return AttemptResult(ok=False, cancelled=True)
            if not result.success:
                malformed = False
                return AttemptResult(
                    ok=False,
                    error=_failure_detail(result, self.config.iteration_timeout_seconds),
                    exit_code=result.exit_code,
                )
            stdout = result.stdout or result.output
            extraction = extract(result.output, role, extract_result(settings.agent, stdout))
            if not extraction.ok:
                malformed = True
                return AttemptResult(
                    ok=False,
                    error=f"unusable structured output: {extraction.failure_reason}",
                    exit_code=result.exit_code,
                )
            if extraction.used_repair:
                logger.info("%s output needed JSON repair (%s block)", role, extraction.source)
            return AttemptResult(ok=True, value=extraction.value)

        return run_phase_with_retry(role, attempt, self.config.retry, cancel_event=self.cancel_event, rng=self.rng)

    def _run_simplifier(self) -> None:
        self._set_status("Fixing")
        prompt = build_simplifier_prompt(self.review_options)

        def attempt(index: int) -> AttemptResult:
            result = self._invoke("code-simplifier", prompt)
            if result.cancelled:
                return AttemptResult(ok=False, cancelled=True)
            if not result.success:
                return AttemptResult(
                    ok=False,
                    error=_failure_detail(result, self.config.iteration_timeout_seconds),
                    exit_code=result.exit_code,
                )
            return AttemptResult(ok=True)

        outcome = run_phase_with_retry(
            "code-simplifier", attempt, self.config.retry, cancel_event=self.cancel_event, rng=self.rng
        )
        if not outcome.ok and not outcome.cancelled and outcome.error is not None:
            logger.warning("Code simplifier skipped: %s", outcome.error.message)

    def _verify(self, fix: FixSummary) -> Optional[IterationError]:
        if not fix.is_consistent():
            return IterationError(
                phase="verification",
                message=(
                    f"Fix summary stop_iteration={fix.stop_iteration} disagrees with its "
                    f"{len(fix.fixes)} fix(es) and NEED INFO items"
                ),
            )
        command = self.config.verify_command
        if not command or not fix.fixes:
            return None
        logger.info("Running verify command: %s", command)
        try:
            completed = subprocess.run(
                command,
                shell=True,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=self.config.iteration_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return IterationError(
                phase="verification",
                message=f"verify command timed out after {self.config.iteration_timeout_seconds:g}s",
            )
        except OSError as exc:
            return IterationError(phase="verification", message=f"verify command could not run: {exc}")
        if completed.returncode != 0:
            tail = _output_tail((completed.stdout or "") + (completed.stderr or ""))
            return IterationError(
                phase="verification",
                message=f"verify command exited {completed.returncode}" + (f": {tail}" if tail else ""),
                exit_code=completed.returncode,
            )
        return None

    def _rollback(self, handle: Optional[CheckpointHandle]) -> Optional[RollbackRecord]:
        if handle is None or self.checkpointer is None:
            return None
        record = self.checkpointer.rollback(handle)
        self.state.rollback = record
        if record.success:
            logger.info("Rolled back working tree to checkpoint")
        return record


def _settings_dict(settings: AgentSettings) -> dict[str, Any]:
    return {
        key: value
        for key, value in {
            "agent": settings.agent,
            "model": settings.model,
            "reasoning": settings.reasoning,
            "provider": settings.provider,
        }.items()
        if value is not None
    }
