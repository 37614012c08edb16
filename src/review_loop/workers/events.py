"""Canonical stream events shared by every agent protocol adapter.

Each agent CLI streams its own JSON vocabulary (``assistant``/``item.completed``/
``message_update`` ...). Adapters in :mod:`review_loop.workers.parsers` map
those onto the five event kinds defined here; display formatting and result
extraction only ever see this union.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

EventKind = Literal["init", "message", "tool_call", "tool_result", "terminal"]
MessageRole = Literal["assistant", "user", "thinking"]
ToolStatus = Literal["success", "error", "running"]

_SYSTEM_REMINDER_RE = re.compile(r"<system-reminder>[\s\S]*?</system-reminder>\s*")


@dataclass(frozen=True)
class InitEvent:
    """Session start marker (``system/init``, ``thread.started``, ``init`` ...)."""

    session_id: Optional[str] = None
    model: Optional[str] = None
    kind: Literal["init"] = field(default="init", init=False)


@dataclass(frozen=True)
class MessageEvent:
    """Text produced by the agent or echoed user input.

    ``is_delta`` marks an incremental fragment that must be buffered before
    display. A non-delta assistant/thinking message that follows deltas of
    the same role is the end-of-block event carrying the full content.
    """

    role: MessageRole
    content: str
    is_delta: bool = False
    kind: Literal["message"] = field(default="message", init=False)


@dataclass(frozen=True)
class ToolCallEvent:
    name: str
    parameters: Any = None
    id: Optional[str] = None
    kind: Literal["tool_call"] = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultEvent:
    id: Optional[str]
    status: ToolStatus
    output: str
    kind: Literal["tool_result"] = field(default="tool_result", init=False)


@dataclass(frozen=True)
class TerminalEvent:
    """End of a turn or of the whole run; ``final_text`` is the agent's answer."""

    final_text: Optional[str]
    status: ToolStatus = "success"
    kind: Literal["terminal"] = field(default="terminal", init=False)


StreamEvent = Union[InitEvent, MessageEvent, ToolCallEvent, ToolResultEvent, TerminalEvent]


def parse_json_object(line: str, *, require_object_prefix: bool = False) -> Optional[dict[str, Any]]:
    """Decode one JSONL line into a dict with a string ``type`` field.

    Returns ``None`` for blank lines, banner/log text, malformed JSON, and
    JSON values that are not typed objects.
    """
    text = line.strip()
    if not text:
        return None
    if require_object_prefix and not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("type"), str):
        return None
    return parsed


def strip_system_reminders(text: Any) -> str:
    """Remove ``<system-reminder>`` spans (including multi-line ones) from text."""
    normalized = text if isinstance(text, str) else ("" if text is None else str(text))
    return _SYSTEM_REMINDER_RE.sub("", normalized).strip()


def stringify_output(value: Any) -> str:
    """Flatten tool output payloads (strings, content-block lists, dicts) to text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: list[str] = []
        for item in value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    if isinstance(value, dict):
        for key in ("content", "output", "stdout", "text"):
            if key in value:
                return stringify_output(value[key])
        return json.dumps(value)
    return str(value)
