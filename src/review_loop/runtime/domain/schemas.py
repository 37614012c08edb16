"""Pydantic models for the structured decisions agents must return."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Priority = Literal["P0", "P1", "P2", "P3"]
FixDecision = Literal["NO_CHANGES_NEEDED", "APPLY_SELECTIVELY", "APPLY_MOST", "NEED_INFO"]
OverallCorrectness = Literal["patch is correct", "patch is incorrect"]


class _DecisionModel(BaseModel):
    # Agent output is untrusted: no string-to-number coercion, unknown keys ignored.
    model_config = ConfigDict(strict=True, extra="ignore")


class LineRange(_DecisionModel):
    start: int
    end: int


class CodeLocation(_DecisionModel):
    absolute_file_path: str
    line_range: LineRange


class ReviewFinding(_DecisionModel):
    id: Optional[int] = None
    title: str
    body: str
    confidence_score: float = Field(ge=0, le=1)
    priority: Optional[int] = Field(default=None, ge=0, le=3)
    code_location: CodeLocation


class ReviewSummary(_DecisionModel):
    """Reviewer verdict on the pending changes."""

    findings: list[ReviewFinding]
    overall_correctness: OverallCorrectness
    overall_explanation: str
    overall_confidence_score: float = Field(ge=0, le=1)

    @model_validator(mode="after")
    def _number_findings(self) -> "ReviewSummary":
        for index, finding in enumerate(self.findings, start=1):
            if finding.id is None:
                finding.id = index
        return self

    @property
    def has_issues(self) -> bool:
        return bool(self.findings)


class FixEntry(_DecisionModel):
    id: int
    title: str
    priority: Priority
    file: Optional[str] = None
    claim: str
    evidence: str
    fix: str


class SkippedEntry(_DecisionModel):
    """A finding the fixer chose not to act on.

    ``reason`` conventionally starts with ``SKIP:`` (not actionable) or
    ``NEED INFO:`` (blocked on information only a human has).
    """

    id: int
    title: str
    priority: Optional[Priority] = None
    reason: str

    @property
    def needs_info(self) -> bool:
        return self.reason.lstrip().upper().startswith("NEED INFO:")


class FixSummary(_DecisionModel):
    """Fixer report: what was applied, what was skipped, and whether to stop."""

    decision: FixDecision
    stop_iteration: Optional[bool] = None
    verification_possible: Optional[bool] = None
    fixes: list[FixEntry]
    skipped: list[SkippedEntry]

    @property
    def nothing_left(self) -> bool:
        """No fix was applied and no skipped finding waits on information."""
        return not self.fixes and not any(entry.needs_info for entry in self.skipped)

    def is_consistent(self) -> bool:
        """``stop_iteration``, when given, must agree with :attr:`nothing_left`."""
        return self.stop_iteration is None or self.stop_iteration == self.nothing_left
