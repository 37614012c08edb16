"""Domain model dataclasses for review loop runs, locks, and session logs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from ...io_utils import now_iso

Phase = Literal["reviewer", "fixer", "code-simplifier", "checkpoint", "verification"]
CycleStatus = Literal[
    "Idle",
    "Reviewing",
    "Checkpointing",
    "Fixing",
    "Deciding",
    "Completed",
    "Failed",
    "Interrupted",
]
LockState = Literal["pending", "running", "completed", "failed"]
LockMode = Literal["foreground", "background"]
SessionEndStatus = Literal["completed", "failed", "interrupted"]

_VALID_LOCK_STATES = {"pending", "running", "completed", "failed"}
_VALID_LOCK_MODES = {"foreground", "background"}
TERMINAL_STATUSES = {"Completed", "Failed", "Interrupted"}

DEFAULT_BRANCH = "default"


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass
class IterationError:
    """Why a phase gave up after exhausting its attempts."""

    phase: Phase
    message: str
    exit_code: Optional[int] = None
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "phase": self.phase,
                "message": self.message,
                "exitCode": self.exit_code,
                "attempts": self.attempts,
            }
        )


@dataclass
class RollbackRecord:
    attempted: bool
    success: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({"attempted": self.attempted, "success": self.success, "reason": self.reason})


@dataclass
class CycleState:
    """Mutable progress of one run. ``iteration`` only ever increases."""

    max_iterations: int
    iteration: int = 0
    status: CycleStatus = "Idle"
    rollback: Optional[RollbackRecord] = None

    def begin_iteration(self) -> int:
        self.iteration += 1
        self.rollback = None
        return self.iteration

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class LockRecord:
    """Contents of a session lock file.

    Stored on disk as camelCase JSON so other tools reading the lock
    directory see the same field names.
    """

    session_id: str
    session_name: str
    project_path: str
    branch: str = DEFAULT_BRANCH
    pid: int = 0
    start_time: str = field(default_factory=now_iso)
    last_heartbeat: str = field(default_factory=now_iso)
    state: LockState = "pending"
    mode: LockMode = "foreground"
    lock_path: str = ""
    iteration: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "sessionId": self.session_id,
                "sessionName": self.session_name,
                "startTime": self.start_time,
                "lastHeartbeat": self.last_heartbeat,
                "pid": self.pid,
                "projectPath": self.project_path,
                "branch": self.branch,
                "state": self.state,
                "mode": self.mode,
                "lockPath": self.lock_path,
                "iteration": self.iteration,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockRecord":
        state = str(data.get("state") or "pending")
        mode = str(data.get("mode") or "foreground")
        raw_pid = data.get("pid")
        raw_iteration = data.get("iteration")
        return cls(
            session_id=str(data.get("sessionId") or ""),
            session_name=str(data.get("sessionName") or ""),
            project_path=str(data.get("projectPath") or ""),
            branch=str(data.get("branch") or DEFAULT_BRANCH),
            pid=raw_pid if isinstance(raw_pid, int) and not isinstance(raw_pid, bool) else 0,
            start_time=str(data.get("startTime") or ""),
            last_heartbeat=str(data.get("lastHeartbeat") or ""),
            state=state if state in _VALID_LOCK_STATES else "pending",  # type: ignore[arg-type]
            mode=mode if mode in _VALID_LOCK_MODES else "foreground",  # type: ignore[arg-type]
            lock_path=str(data.get("lockPath") or ""),
            iteration=raw_iteration if isinstance(raw_iteration, int) and not isinstance(raw_iteration, bool) else None,
        )


@dataclass
class CycleResult:
    success: bool
    final_status: CycleStatus
    reason: str
    session_path: Optional[str]
    iterations: int
    conflict: Optional[LockRecord] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "success": self.success,
                "finalStatus": self.final_status,
                "reason": self.reason,
                "sessionPath": self.session_path,
                "iterations": self.iterations,
                "conflict": self.conflict.to_dict() if self.conflict else None,
            }
        )


# Session log entries


@dataclass
class SystemEntry:
    project_path: str
    reviewer: dict[str, Any]
    fixer: dict[str, Any]
    max_iterations: int
    git_branch: Optional[str] = None
    code_simplifier: Optional[dict[str, Any]] = None
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "type": "system",
                "timestamp": self.timestamp,
                "sessionId": self.session_id,
                "projectPath": self.project_path,
                "gitBranch": self.git_branch,
                "reviewer": self.reviewer,
                "fixer": self.fixer,
                "codeSimplifier": self.code_simplifier,
                "maxIterations": self.max_iterations,
            }
        )


@dataclass
class IterationEntry:
    """One iteration's outcome: review, fixes, and any error or rollback."""

    iteration: int
    duration_seconds: Optional[float] = None
    review: Optional[dict[str, Any]] = None
    fixes: Optional[dict[str, Any]] = None
    error: Optional[IterationError] = None
    rollback: Optional[RollbackRecord] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "type": "iteration",
                "timestamp": self.timestamp,
                "iteration": self.iteration,
                "duration": round(self.duration_seconds, 3) if self.duration_seconds is not None else None,
                "review": self.review,
                "fixes": self.fixes,
                "error": self.error.to_dict() if self.error else None,
                "rollback": self.rollback.to_dict() if self.rollback else None,
            }
        )


@dataclass
class SessionEndEntry:
    status: SessionEndStatus
    reason: str
    iterations: int
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "session_end",
            "timestamp": self.timestamp,
            "status": self.status,
            "reason": self.reason,
            "iterations": self.iterations,
        }
