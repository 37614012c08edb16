"""Domain models for review loop runs, locks, and agent decisions."""

from .models import CycleResult, CycleState, IterationError, LockRecord, RollbackRecord
from .schemas import FixSummary, ReviewFinding, ReviewSummary

__all__ = [
    "CycleResult",
    "CycleState",
    "FixSummary",
    "IterationError",
    "LockRecord",
    "ReviewFinding",
    "ReviewSummary",
    "RollbackRecord",
]
