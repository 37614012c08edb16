"""Argv and environment builders for each supported agent CLI."""

from __future__ import annotations

import os
from typing import Callable, Optional

from ..config import AgentSettings

DEFAULT_COMMANDS: dict[str, str] = {
    "claude": "claude",
    "codex": "codex",
    "droid": "droid",
    "gemini": "gemini",
    "pi": "pi",
    "opencode": "opencode",
}

DEFAULT_DROID_MODEL = "gpt-5.2-codex"
DEFAULT_CODEX_REASONING = "high"
_CODEX_REASONING = {"low", "medium", "high", "xhigh"}


def _with_model(args: list[str], model: Optional[str]) -> list[str]:
    return [*args, "--model", model] if model else args


def _claude_args(role: str, prompt: str, settings: AgentSettings) -> list[str]:
    return [
        *_with_model([], settings.model),
        "-p",
        prompt,
        "--dangerously-skip-permissions",
        "--verbose",
        "--output-format",
        "stream-json",
    ]


def _codex_args(role: str, prompt: str, settings: AgentSettings) -> list[str]:
    args = ["exec", "--json"]
    if role != "reviewer":
        args.append("--full-auto")
    reasoning = settings.reasoning if settings.reasoning in _CODEX_REASONING else DEFAULT_CODEX_REASONING
    args += ["--config", f"model_reasoning_effort={reasoning}"]
    return [*_with_model(args, settings.model), prompt]


def _droid_args(role: str, prompt: str, settings: AgentSettings) -> list[str]:
    return [
        "exec",
        "--auto",
        "medium",
        "--model",
        settings.model or DEFAULT_DROID_MODEL,
        "--reasoning-effort",
        "high",
        "--output-format",
        "stream-json",
        prompt,
    ]


def _gemini_args(role: str, prompt: str, settings: AgentSettings) -> list[str]:
    args = _with_model(["--yolo"], settings.model)
    return [*args, "--output-format", "stream-json", "--prompt", prompt]


def _pi_args(role: str, prompt: str, settings: AgentSettings) -> list[str]:
    args = ["--provider", settings.provider or "", "--model", settings.model or ""]
    if settings.reasoning and settings.reasoning != "max":
        args += ["--thinking", settings.reasoning]
    return [*args, "--mode", "json", "-p", prompt]


def _opencode_args(role: str, prompt: str, settings: AgentSettings) -> list[str]:
    return [*_with_model(["run"], settings.model), prompt]


_BUILDERS: dict[str, Callable[[str, str, AgentSettings], list[str]]] = {
    "claude": _claude_args,
    "codex": _codex_args,
    "droid": _droid_args,
    "gemini": _gemini_args,
    "pi": _pi_args,
    "opencode": _opencode_args,
}


def build_command(settings: AgentSettings, role: str, prompt: str) -> list[str]:
    """Return the full argv for running ``settings.agent`` in ``role`` with ``prompt``."""
    builder = _BUILDERS.get(settings.agent)
    if builder is None:
        raise ValueError(f"Unknown agent '{settings.agent}' (available: {', '.join(sorted(_BUILDERS))})")
    executable = settings.command or DEFAULT_COMMANDS[settings.agent]
    return [executable, *builder(role, prompt, settings)]


def build_env(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env
