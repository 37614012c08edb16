"""Review/fix cycle orchestration."""

from .engine import CycleEngine, determine_cycle_result, should_stop
from .extraction import ExtractionResult, extract

__all__ = ["CycleEngine", "ExtractionResult", "determine_cycle_result", "extract", "should_stop"]
