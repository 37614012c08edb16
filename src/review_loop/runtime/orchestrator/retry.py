"""Bounded retry with exponential backoff and jitter for agent phases."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ...config import RetryConfig
from ..domain.models import IterationError, Phase

logger = logging.getLogger(__name__)


def retry_delay(
    attempt: int,
    base_delay_ms: float,
    max_delay_ms: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay in milliseconds before retry number ``attempt`` (0-based).

    ``min(max_delay_ms, base * 2**attempt + U[0, base * 2**attempt / 2))``
    """
    exponential = base_delay_ms * (2 ** max(0, attempt))
    jitter = (rng or random).random() * (exponential / 2)
    return min(max_delay_ms, exponential + jitter)


@dataclass
class AttemptResult:
    """What one invocation of a phase produced."""

    ok: bool
    value: Any = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    cancelled: bool = False


@dataclass
class PhaseOutcome:
    phase: Phase
    ok: bool
    attempts: int
    value: Any = None
    cancelled: bool = False
    error: Optional[IterationError] = None


AttemptFn = Callable[[int], AttemptResult]


def run_phase_with_retry(
    phase: Phase,
    attempt_fn: AttemptFn,
    retry: RetryConfig,
    *,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
) -> PhaseOutcome:
    """Call ``attempt_fn(attempt)`` until it succeeds, is cancelled, or retries run out.

    The backoff sleep waits on ``cancel_event`` so an interrupt cuts it short.
    """
    cancel_event = cancel_event or threading.Event()
    max_attempts = max(0, retry.max_retries) + 1
    last: Optional[AttemptResult] = None
    attempts = 0

    for attempt in range(max_attempts):
        if cancel_event.is_set():
            return PhaseOutcome(phase=phase, ok=False, attempts=attempts, cancelled=True)
        attempts = attempt + 1
        last = attempt_fn(attempt)
        if last.ok:
            return PhaseOutcome(phase=phase, ok=True, attempts=attempts, value=last.value)
        if last.cancelled:
            return PhaseOutcome(phase=phase, ok=False, attempts=attempts, cancelled=True)
        if attempts >= max_attempts:
            break
        delay_ms = retry_delay(attempt, retry.base_delay_ms, retry.max_delay_ms, rng)
        logger.warning(
            "%s attempt %d/%d failed: %s; retrying in %.1fs",
            phase,
            attempts,
            max_attempts,
            last.error,
            delay_ms / 1000,
        )
        if cancel_event.wait(delay_ms / 1000):
            return PhaseOutcome(phase=phase, ok=False, attempts=attempts, cancelled=True)

    detail = last.error if last and last.error else "unknown error"
    return PhaseOutcome(
        phase=phase,
        ok=False,
        attempts=attempts,
        error=IterationError(
            phase=phase,
            message=f"{phase} failed after {attempts} attempt(s): {detail}",
            exit_code=last.exit_code if last else None,
            attempts=attempts,
        ),
    )
