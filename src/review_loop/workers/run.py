"""Run one agent CLI as a subprocess with timeout and cancellation."""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ..config import AgentSettings
from .commands import build_command, build_env
from .display import StreamDisplay

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130
SPAWN_FAILED_EXIT_CODE = 127


@dataclass
class AgentRunResult:
    """Outcome of one agent subprocess.

    ``output`` is the captured stdout followed by a ``[stderr]`` section when
    the agent wrote to stderr; ``stdout`` alone is what stream parsers read.
    Cancelled runs discard whatever was captured.
    """

    exit_code: int
    output: str
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False
    command: Optional[list[str]] = None
    stdout: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def _stream_pipe(pipe: Any, sink: list[str], on_line: Optional[Callable[[str], None]]) -> None:
    for line in iter(pipe.readline, ""):
        sink.append(line)
        if on_line is not None:
            try:
                on_line(line)
            except Exception:
                logger.debug("Display callback failed", exc_info=True)
    try:
        pipe.close()
    except OSError:
        pass


def _stop_process(process: subprocess.Popen, grace_seconds: float) -> None:
    process.terminate()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_process(
    argv: list[str],
    *,
    cwd: Path,
    timeout_seconds: float,
    cancel_event: Optional[threading.Event] = None,
    on_stdout_line: Optional[Callable[[str], None]] = None,
    env: Optional[dict[str, str]] = None,
    poll_interval: float = 0.1,
    terminate_grace_seconds: float = 5.0,
) -> AgentRunResult:
    """Spawn ``argv`` and wait for it, enforcing ``timeout_seconds``.

    The control thread polls for exit, timeout and ``cancel_event`` while
    reader threads drain stdout/stderr so a chatty agent never blocks on a
    full pipe. On timeout or cancellation the process gets SIGTERM, then
    SIGKILL after ``terminate_grace_seconds``.
    """
    start = time.monotonic()
    try:
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=env,
        )
    except OSError as exc:
        logger.warning("Failed to start %s: %s", argv[0] if argv else "<empty>", exc)
        return AgentRunResult(
            exit_code=SPAWN_FAILED_EXIT_CODE,
            output=f"[Error: {exc}]",
            duration_seconds=time.monotonic() - start,
            command=argv,
        )

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    stdout_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stdout, stdout_lines, on_stdout_line),
        daemon=True,
    )
    stderr_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stderr, stderr_lines, None),
        daemon=True,
    )
    stdout_thread.start()
    stderr_thread.start()

    timed_out = False
    cancelled = False
    while process.poll() is None:
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            _stop_process(process, terminate_grace_seconds)
            break
        if time.monotonic() - start > timeout_seconds:
            timed_out = True
            _stop_process(process, terminate_grace_seconds)
            break
        time.sleep(poll_interval)

    exit_code = process.poll()
    if exit_code is None:
        exit_code = -1

    stdout_thread.join(timeout=5)
    stderr_thread.join(timeout=5)
    duration = time.monotonic() - start

    if cancelled:
        return AgentRunResult(
            exit_code=CANCELLED_EXIT_CODE,
            output="",
            duration_seconds=duration,
            cancelled=True,
            command=argv,
        )

    stdout = "".join(stdout_lines)
    stderr = "".join(stderr_lines)
    output = stdout + (f"\n[stderr]\n{stderr}" if stderr else "")
    if timed_out:
        output = f"[Timeout after {timeout_seconds:g}s]\n{output}"
        exit_code = TIMEOUT_EXIT_CODE
    return AgentRunResult(
        exit_code=exit_code,
        output=output,
        duration_seconds=duration,
        timed_out=timed_out,
        command=argv,
        stdout=stdout,
    )


def run_agent(
    settings: AgentSettings,
    role: str,
    prompt: str,
    *,
    cwd: Path,
    timeout_seconds: float,
    cancel_event: Optional[threading.Event] = None,
    echo: bool = False,
) -> AgentRunResult:
    """Run the agent configured by ``settings`` in ``role``.

    With ``echo`` the agent's stream is rendered to stdout as it arrives.
    """
    argv = build_command(settings, role, prompt)
    display: Optional[StreamDisplay] = StreamDisplay(settings.agent) if echo else None

    def _echo(line: str) -> None:
        assert display is not None
        for chunk in display.feed(line):
            sys.stdout.write(chunk + "\n")
        sys.stdout.flush()

    logger.debug("Running %s as %s: %s", settings.agent, role, argv[0])
    result = run_process(
        argv,
        cwd=cwd,
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
        on_stdout_line=_echo if display is not None else None,
        env=build_env(),
    )
    if display is not None:
        for chunk in display.close():
            sys.stdout.write(chunk + "\n")
        sys.stdout.flush()
    return result
