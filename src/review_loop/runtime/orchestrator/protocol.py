"""Delimiter tokens and the structured output instructions built around them."""

from __future__ import annotations

from dataclasses import dataclass

REVIEW_SUMMARY_START_TOKEN = "<<<RR_REVIEW_SUMMARY_JSON_START>>>"
REVIEW_SUMMARY_END_TOKEN = "<<<RR_REVIEW_SUMMARY_JSON_END>>>"
FIX_SUMMARY_START_TOKEN = "<<<RR_FIX_SUMMARY_JSON_START>>>"
FIX_SUMMARY_END_TOKEN = "<<<RR_FIX_SUMMARY_JSON_END>>>"


@dataclass(frozen=True)
class Delimiters:
    start: str
    end: str


DELIMITERS: dict[str, Delimiters] = {
    "reviewer": Delimiters(REVIEW_SUMMARY_START_TOKEN, REVIEW_SUMMARY_END_TOKEN),
    "fixer": Delimiters(FIX_SUMMARY_START_TOKEN, FIX_SUMMARY_END_TOKEN),
}


def delimiters_for(role: str) -> Delimiters:
    try:
        return DELIMITERS[role]
    except KeyError:
        raise ValueError(f"No structured output protocol for role '{role}'") from None


def structured_output_instructions(role: str) -> str:
    tokens = delimiters_for(role)
    lines = [
        "## Structured output protocol (STRICT)",
        "- Output MUST be one JSON object that matches the required schema.",
        "- Wrap that JSON object using these exact delimiters:",
        f"  - {tokens.start}",
        f"  - {tokens.end}",
        "- Do not wrap the JSON in markdown fences.",
    ]
    if role == "reviewer":
        lines.append("- Do not include any text before the start token or after the end token.")
    else:
        lines.append("- The delimited JSON block MUST be the final output in the response.")
    return "\n".join(lines)


def structured_output_retry_reminder(role: str) -> str:
    """Appended to the prompt when a retry follows missing or invalid structured output."""
    tokens = delimiters_for(role)
    lines = ["IMPORTANT: Your previous response was missing or invalid structured JSON output."]
    if role == "fixer":
        lines.append("Do not make additional file edits in this retry.")
    lines += [
        "Return ONLY one schema-valid JSON object wrapped in:",
        tokens.start,
        "<json>",
        tokens.end,
    ]
    return "\n".join(lines)
