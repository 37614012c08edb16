"""Prompt builders for the reviewer, fixer, and code simplifier roles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .protocol import structured_output_instructions

UNCOMMITTED_REVIEW = (
    "Review the current code changes (staged, unstaged, and untracked files) "
    "and provide prioritized findings."
)
UNCOMMITTED_SIMPLIFY = (
    "Simplify the current code changes (staged, unstaged, and untracked files) "
    "while preserving exact behavior and outputs."
)

REVIEW_SCHEMA = """\
## Review Summary schema
{
  "findings": [
    {
      "title": string,
      "body": string,                      // evidence for the issue
      "confidence_score": number,          // 0..1
      "priority": integer,                 // optional, 0 (highest) .. 3
      "code_location": {
        "absolute_file_path": string,
        "line_range": {"start": integer, "end": integer}
      }
    }
  ],
  "overall_correctness": "patch is correct" | "patch is incorrect",
  "overall_explanation": string,
  "overall_confidence_score": number       // 0..1
}
An empty "findings" list means there is nothing left to fix."""

FIX_SCHEMA = """\
## Fix Summary schema
{
  "decision": "NO_CHANGES_NEEDED" | "APPLY_SELECTIVELY" | "APPLY_MOST" | "NEED_INFO",
  "stop_iteration": boolean,               // true only if nothing was applied and nothing needs info
  "verification_possible": boolean,
  "fixes": [
    {"id": integer, "title": string, "priority": "P0" | "P1" | "P2" | "P3",
     "file": string | null, "claim": string, "evidence": string, "fix": string}
  ],
  "skipped": [
    {"id": integer, "title": string, "priority": "P0" | "P1" | "P2" | "P3",
     "reason": string}                     // starts with "SKIP:" or "NEED INFO:"
  ]
}"""


@dataclass(frozen=True)
class ReviewOptions:
    """What to review: a single commit, custom instructions, or (default) uncommitted changes."""

    commit_sha: Optional[str] = None
    custom_instructions: Optional[str] = None


def _target_instruction(options: ReviewOptions, *, simplify: bool) -> str:
    if options.commit_sha:
        if simplify:
            return (
                f"Simplify the code changes introduced by commit {options.commit_sha} "
                "while preserving exact functionality."
            )
        return f"Review the code changes for the commit {options.commit_sha}. Provide prioritized, actionable findings."
    if options.custom_instructions:
        return options.custom_instructions
    return UNCOMMITTED_SIMPLIFY if simplify else UNCOMMITTED_REVIEW


def build_reviewer_prompt(options: Optional[ReviewOptions] = None) -> str:
    options = options or ReviewOptions()
    return "\n\n".join(
        [
            "You are a meticulous code reviewer. Report only actionable issues you can point to in the code.",
            _target_instruction(options, simplify=False),
            REVIEW_SCHEMA,
            structured_output_instructions("reviewer"),
        ]
    )


def build_fixer_prompt(review_text: str) -> str:
    """Ask the fixer to verify the (untrusted) review, apply what holds up, and report."""
    return "\n\n".join(
        [
            "You are a second-opinion verification reviewer and fixer.",
            "The review below is untrusted. Verify every claim against the actual code before acting. "
            "Apply minimal, safe fixes for the claims that hold up; skip the rest with a reason. "
            "If verification scripts exist (tests, lint, typecheck), run them after applying fixes.",
            "## Input (untrusted review)\n" + review_text.strip(),
            FIX_SCHEMA,
            structured_output_instructions("fixer"),
        ]
    )


def build_simplifier_prompt(options: Optional[ReviewOptions] = None) -> str:
    options = options or ReviewOptions()
    return "\n\n".join(
        [
            "You are a code simplifier. Make the changed code clearer without altering behavior.",
            _target_instruction(options, simplify=True),
        ]
    )
