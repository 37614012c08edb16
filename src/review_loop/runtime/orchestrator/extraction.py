"""Pull one schema-valid decision out of an untrusted agent transcript.

Candidates come from three families, tried in order: delimited blocks
(role-specific start/end tokens), ```json fenced blocks, and bare balanced
JSON objects. The first family that yields a valid candidate wins; within a
family later candidates beat earlier ones because cumulative transcripts
repeat stale output. Every candidate gets a strict parse and, if that or schema
validation fails, exactly one repair pass.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Union

from pydantic import ValidationError

from ..domain.schemas import FixSummary, ReviewSummary
from .protocol import Delimiters, delimiters_for

logger = logging.getLogger(__name__)

ExtractionSource = Literal["delimited", "fenced", "bare"]
Decision = Union[ReviewSummary, FixSummary]

_MODELS: dict[str, type[ReviewSummary] | type[FixSummary]] = {
    "reviewer": ReviewSummary,
    "fixer": FixSummary,
}

_FENCED_BLOCK_RE = re.compile(r"```json[ \t]*\n([\s\S]*?)\n[ \t]*```", re.IGNORECASE)
_WHOLE_FENCE_RE = re.compile(r"^```(?:json)?[ \t]*\n([\s\S]*?)\n[ \t]*```$", re.IGNORECASE)
_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\u2060\ufeff]")
_HEX4_RE = re.compile(r"[0-9a-fA-F]{4}")
_VALID_ESCAPES = set('"\\/bfnrtu')
_CLOSING_FOLLOWERS = set(",}]:")


@dataclass
class ExtractionResult:
    ok: bool
    source: Optional[ExtractionSource] = None
    used_repair: bool = False
    value: Optional[Decision] = None
    failure_reason: Optional[str] = None


# Candidate finders


def find_delimited_blocks(text: str, tokens: Delimiters) -> list[str]:
    """Payloads between each start token and the next end token, in document order."""
    blocks: list[str] = []
    position = 0
    while True:
        start = text.find(tokens.start, position)
        if start < 0:
            break
        payload_start = start + len(tokens.start)
        end = text.find(tokens.end, payload_start)
        if end < 0:
            break
        blocks.append(text[payload_start:end].strip())
        position = end + len(tokens.end)
    return blocks


def find_fenced_blocks(text: str) -> list[str]:
    return [match.group(1).strip() for match in _FENCED_BLOCK_RE.finditer(text)]


def find_balanced_objects(text: str) -> list[str]:
    """Top-level ``{...}`` spans with balanced braces, ignoring braces inside strings."""
    objects: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                objects.append(text[start : index + 1])
                start = -1
    return objects


# Repair


def _normalize_text(candidate: str) -> str:
    text = _ZERO_WIDTH_RE.sub("", candidate)
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def _unwrap_fence(candidate: str) -> str:
    match = _WHOLE_FENCE_RE.match(candidate)
    return match.group(1).strip() if match else candidate


def _normalize_smart_quotes(candidate: str) -> str:
    text = re.sub("[\u2018\u2019\u201a\u201b]", "'", candidate)
    return re.sub("[\u201c\u201d\u201e\u201f\u00ab\u00bb]", '"', text)


def _isolate_last_object(candidate: str) -> str:
    objects = find_balanced_objects(candidate)
    return objects[-1].strip() if objects else candidate


def _repair_strings(candidate: str) -> str:
    """Escape raw control characters, stray backslashes and interior quotes inside strings.

    A ``"`` inside a string closes it only when the next non-blank character
    is structural (``, } ] :``) or the text ends; otherwise it is escaped.
    """
    out: list[str] = []
    in_string = False
    index = 0
    length = len(candidate)
    while index < length:
        char = candidate[index]
        if not in_string:
            out.append(char)
            if char == '"':
                in_string = True
            index += 1
            continue

        if char == "\\":
            following = candidate[index + 1] if index + 1 < length else ""
            if following in _VALID_ESCAPES and (
                following != "u" or _HEX4_RE.match(candidate, index + 2) is not None
            ):
                out.append(char + following)
                index += 2
                continue
            out.append("\\\\")
            index += 1
            continue

        if char == '"':
            lookahead = index + 1
            while lookahead < length and candidate[lookahead] in " \t\n":
                lookahead += 1
            if lookahead >= length or candidate[lookahead] in _CLOSING_FOLLOWERS:
                out.append('"')
                in_string = False
            else:
                out.append('\\"')
            index += 1
            continue

        if char == "\n":
            out.append("\\n")
        elif char == "\t":
            out.append("\\t")
        elif char == "\r":
            out.append("\\r")
        elif ord(char) < 0x20:
            out.append(f"\\u{ord(char):04x}")
        else:
            out.append(char)
        index += 1
    return "".join(out)


def _remove_trailing_commas(candidate: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(candidate):
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            out.append(char)
            continue
        if char == ",":
            rest = candidate[index + 1 :].lstrip()
            if rest[:1] in ("}", "]"):
                continue
        out.append(char)
    return "".join(out)


def repair_json(candidate: str) -> str:
    """Apply every known fix for common LLM JSON defects in one pass."""
    text = _normalize_text(candidate)
    text = _unwrap_fence(text)
    text = _normalize_smart_quotes(text)
    text = _isolate_last_object(text)
    text = _repair_strings(text)
    text = _remove_trailing_commas(text)
    return text.strip()


# Parsing


@dataclass
class _CandidateOutcome:
    value: Optional[Decision] = None
    used_repair: bool = False
    parsed: bool = False
    error: Optional[str] = None


def _validate(parsed: object, model: type[ReviewSummary] | type[FixSummary]) -> tuple[Optional[Decision], Optional[str]]:
    try:
        return model.model_validate(parsed), None
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
        return None, f"{location}: {first.get('msg', 'invalid')}"


def _parse_candidate(candidate: str, model: type[ReviewSummary] | type[FixSummary]) -> _CandidateOutcome:
    """Strict parse and validate; on either failure, one repair pass.

    Repair also runs after a schema rejection because some defects (invisible
    characters inside an enum value, say) still parse as JSON.
    """
    strict: Optional[_CandidateOutcome] = None
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        pass
    else:
        value, error = _validate(parsed, model)
        if value is not None:
            return _CandidateOutcome(value=value, parsed=True)
        strict = _CandidateOutcome(parsed=True, error=error)

    repaired = repair_json(candidate)
    if repaired == candidate.strip():
        return strict or _CandidateOutcome()
    try:
        reparsed = json.loads(repaired)
    except (json.JSONDecodeError, ValueError):
        return strict or _CandidateOutcome()
    value, error = _validate(reparsed, model)
    if value is not None:
        return _CandidateOutcome(value=value, used_repair=True, parsed=True)
    return strict or _CandidateOutcome(parsed=True, error=error)


_FAMILIES: tuple[tuple[ExtractionSource, str], ...] = (
    ("delimited", "delimited block"),
    ("fenced", "fenced block"),
    ("bare", "JSON object"),
)


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def extract(raw_transcript: str, role: str, extracted_text: Optional[str] = None) -> ExtractionResult:
    """Extract the ``role``'s decision from a transcript.

    Args:
        raw_transcript (str): Everything the agent wrote.
        role (str): ``"reviewer"`` (ReviewSummary) or ``"fixer"`` (FixSummary).
        extracted_text (Optional[str]): The agent's final answer as recovered by
            the stream parser; searched before the raw transcript.

    Returns:
        ExtractionResult: The validated decision, or a failure reason naming
        every family and why it produced nothing.

    Raises:
        ValueError: If ``role`` has no decision schema.
    """
    model = _MODELS.get(role)
    if model is None:
        raise ValueError(f"No decision schema for role '{role}'")
    tokens = delimiters_for(role)
    texts = _dedupe([(extracted_text or "").strip(), (raw_transcript or "").strip()])

    finders: dict[ExtractionSource, Callable[[str], list[str]]] = {
        "delimited": lambda text: find_delimited_blocks(text, tokens),
        "fenced": find_fenced_blocks,
        "bare": find_balanced_objects,
    }

    reasons: list[str] = []
    for source, label in _FAMILIES:
        candidates = _dedupe([c for text in texts for c in reversed(finders[source](text))])
        if not candidates:
            reasons.append(f"{source}: no {label} found")
            continue
        schema_error: Optional[str] = None
        for candidate in candidates:
            outcome = _parse_candidate(candidate, model)
            if outcome.value is not None:
                logger.debug("Extracted %s from %s candidate (repair=%s)", model.__name__, source, outcome.used_repair)
                return ExtractionResult(ok=True, source=source, used_repair=outcome.used_repair, value=outcome.value)
            if outcome.parsed and schema_error is None:
                schema_error = outcome.error
        if schema_error is not None:
            reasons.append(f"{source}: {label} failed {model.__name__} validation ({schema_error})")
        else:
            reasons.append(f"{source}: {label} invalid JSON")

    return ExtractionResult(ok=False, failure_reason="; ".join(reasons))
