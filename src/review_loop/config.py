"""Load and normalize the review-loop YAML configuration."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, cast

import yaml

from .workers.parsers import AGENT_TYPES, AgentType

ReasoningLevel = Literal["low", "medium", "high", "xhigh", "max"]
REASONING_LEVELS: tuple[str, ...] = ("low", "medium", "high", "xhigh", "max")

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_ITERATION_TIMEOUT_SECONDS = 1800
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_HEARTBEAT_SECONDS = 10.0
DEFAULT_STALE_AFTER_SECONDS = 60.0

HOME_ENV_VAR = "REVIEW_LOOP_HOME"


class ConfigError(ValueError):
    """Raised when the configuration file is missing required fields or is malformed."""


@dataclass(frozen=True)
class AgentSettings:
    """Which agent CLI plays a role and how it is invoked.

    Attributes:
        agent: Agent family; selects the argv builder and the stream protocol.
        model: Optional model identifier passed through to the CLI.
        reasoning: Optional reasoning level for agents that support one.
        provider: Model provider, required for ``pi``.
        command: Executable override (defaults to the agent's usual binary).
    """

    agent: AgentType
    model: Optional[str] = None
    reasoning: Optional[ReasoningLevel] = None
    provider: Optional[str] = None
    command: Optional[str] = None


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS


@dataclass(frozen=True)
class ReviewLoopConfig:
    """Fully resolved settings for one review loop run.

    Attributes:
        reviewer: Agent that reviews the pending changes.
        fixer: Agent that applies fixes for reported findings.
        code_simplifier: Optional agent for the simplifier pass; the reviewer's
            settings are used when unset.
        max_iterations: Upper bound on review/fix iterations.
        iteration_timeout_seconds: Wall-clock limit for one agent invocation.
        retry: Backoff settings for failed agent invocations.
        simplifier: Run the code simplifier before the first review.
        verify_command: Optional shell command that must exit 0 after each fix.
        heartbeat_seconds: Interval between session lock heartbeats.
        stale_after_seconds: Heartbeat age after which a lock is reclaimable.
        logs_dir: Override for the session log and lock directory.
    """

    reviewer: AgentSettings
    fixer: AgentSettings
    code_simplifier: Optional[AgentSettings] = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    iteration_timeout_seconds: float = DEFAULT_ITERATION_TIMEOUT_SECONDS
    retry: RetryConfig = field(default_factory=RetryConfig)
    simplifier: bool = False
    verify_command: Optional[str] = None
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS
    logs_dir: Optional[str] = None

    def settings_for(self, role: str) -> AgentSettings:
        """Return the agent settings used for ``role``."""
        if role == "reviewer":
            return self.reviewer
        if role == "fixer":
            return self.fixer
        if role == "code-simplifier":
            return self.code_simplifier or self.reviewer
        raise ValueError(f"Unknown role '{role}'")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("reviewer", "fixer", "code_simplifier"):
            if isinstance(data.get(key), dict):
                data[key] = {k: v for k, v in data[key].items() if v is not None}
        return {k: v for k, v in data.items() if v is not None}


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _optional_str(value: Any) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text or None


def _positive_number(
    raw: dict[str, Any], key: str, default: float, *, integer: bool = False, allow_zero: bool = False
) -> Any:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"'{key}' must be positive, got {value!r}")
    if integer and value != int(value):
        raise ConfigError(f"'{key}' must be a whole number, got {value!r}")
    return int(value) if integer else float(value)


def parse_agent_settings(value: Any, *, role: str) -> AgentSettings:
    """Validate one ``reviewer``/``fixer``/``code_simplifier`` block.

    Args:
        value (Any): Raw mapping from the YAML document.
        role (str): Role name used in error messages.

    Returns:
        AgentSettings: Normalized settings.

    Raises:
        ConfigError: If the agent is unknown, the reasoning level is invalid,
            or a ``pi`` block lacks its provider/model.
    """
    raw = _as_dict(value)
    if not raw:
        raise ConfigError(f"'{role}' must be a mapping with at least an 'agent' key")
    agent = str(raw.get("agent") or "").strip().lower()
    if agent not in AGENT_TYPES:
        raise ConfigError(f"'{role}.agent' must be one of {', '.join(AGENT_TYPES)}, got {raw.get('agent')!r}")

    reasoning = _optional_str(raw.get("reasoning"))
    if reasoning is not None:
        reasoning = reasoning.lower()
        if reasoning not in REASONING_LEVELS:
            raise ConfigError(f"'{role}.reasoning' must be one of {', '.join(REASONING_LEVELS)}")

    model = _optional_str(raw.get("model"))
    provider = _optional_str(raw.get("provider"))
    if agent == "pi":
        if not provider or not model:
            raise ConfigError(f"'{role}' uses pi and needs both 'provider' and 'model'")
    elif provider is not None:
        raise ConfigError(f"'{role}.provider' is only supported for the pi agent")

    return AgentSettings(
        agent=cast(AgentType, agent),
        model=model,
        reasoning=cast(Optional[ReasoningLevel], reasoning),
        provider=provider,
        command=_optional_str(raw.get("command")),
    )


def parse_config(data: Any) -> ReviewLoopConfig:
    """Normalize a parsed YAML document into :class:`ReviewLoopConfig`."""
    raw = _as_dict(data)
    if not raw:
        raise ConfigError("Configuration must be a mapping")

    simplifier_raw = raw.get("code_simplifier", raw.get("code-simplifier"))
    retry_raw = _as_dict(raw.get("retry"))
    run_raw = _as_dict(raw.get("run"))
    lock_raw = _as_dict(raw.get("lock"))

    retry = RetryConfig(
        max_retries=_positive_number(retry_raw, "max_retries", DEFAULT_MAX_RETRIES, integer=True, allow_zero=True),
        base_delay_ms=_positive_number(retry_raw, "base_delay_ms", DEFAULT_BASE_DELAY_MS, integer=True),
        max_delay_ms=_positive_number(retry_raw, "max_delay_ms", DEFAULT_MAX_DELAY_MS, integer=True),
    )
    if retry.max_delay_ms < retry.base_delay_ms:
        raise ConfigError("'retry.max_delay_ms' must not be smaller than 'retry.base_delay_ms'")
    heartbeat_seconds = _positive_number(lock_raw, "heartbeat_seconds", DEFAULT_HEARTBEAT_SECONDS)
    stale_after_seconds = _positive_number(lock_raw, "stale_after_seconds", DEFAULT_STALE_AFTER_SECONDS)
    if heartbeat_seconds >= stale_after_seconds:
        raise ConfigError("'lock.heartbeat_seconds' must be smaller than 'lock.stale_after_seconds'")

    return ReviewLoopConfig(
        reviewer=parse_agent_settings(raw.get("reviewer"), role="reviewer"),
        fixer=parse_agent_settings(raw.get("fixer"), role="fixer"),
        code_simplifier=(
            parse_agent_settings(simplifier_raw, role="code_simplifier") if simplifier_raw is not None else None
        ),
        max_iterations=_positive_number(raw, "max_iterations", DEFAULT_MAX_ITERATIONS, integer=True),
        iteration_timeout_seconds=_positive_number(
            raw, "iteration_timeout_seconds", DEFAULT_ITERATION_TIMEOUT_SECONDS
        ),
        retry=retry,
        simplifier=bool(run_raw.get("simplifier", False)),
        verify_command=_optional_str(raw.get("verify_command")),
        heartbeat_seconds=heartbeat_seconds,
        stale_after_seconds=stale_after_seconds,
        logs_dir=_optional_str(raw.get("logs_dir")),
    )


def config_home() -> Path:
    override = os.environ.get(HOME_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "review-loop"


def default_config_path() -> Path:
    return config_home() / "config.yaml"


def resolve_logs_dir(config: Optional[ReviewLoopConfig] = None) -> Path:
    if config is not None and config.logs_dir:
        return Path(config.logs_dir).expanduser()
    return config_home() / "logs"


def load_config(path: Optional[Path] = None) -> ReviewLoopConfig:
    """Read and validate the configuration file.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or fails validation.
    """
    config_path = path or default_config_path()
    if not config_path.exists():
        raise ConfigError(f"No configuration found at {config_path}")
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    return parse_config(raw)


def save_config(config: ReviewLoopConfig, path: Optional[Path] = None) -> Path:
    config_path = path or default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.to_dict()
    payload["run"] = {"simplifier": payload.pop("simplifier", False)}
    payload["lock"] = {
        "heartbeat_seconds": payload.pop("heartbeat_seconds"),
        "stale_after_seconds": payload.pop("stale_after_seconds"),
    }
    tmp_path = config_path.with_suffix(f"{config_path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, config_path)
    return config_path
