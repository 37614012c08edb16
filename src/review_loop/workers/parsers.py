"""Protocol adapters turning agent transcript lines into canonical events."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Literal, Optional

from .events import (
    InitEvent,
    MessageEvent,
    StreamEvent,
    TerminalEvent,
    ToolCallEvent,
    ToolResultEvent,
    parse_json_object,
    stringify_output,
)

logger = logging.getLogger(__name__)

AgentType = Literal["claude", "codex", "droid", "gemini", "pi", "opencode"]
AGENT_TYPES: tuple[str, ...] = ("claude", "codex", "droid", "gemini", "pi", "opencode")

# Agents whose stdout is plain text rather than JSONL.
PLAIN_TEXT_AGENTS = frozenset({"opencode"})
# Agents that print banners such as "YOLO mode is enabled" before their JSON.
_OBJECT_PREFIX_AGENTS = frozenset({"gemini", "pi"})

_SHELL_WRAPPER_RE = re.compile(r"(?:/bin/\w+|-lc)\s+'([^']+)'$")


@dataclass
class _ParserState:
    last_assistant_text: Optional[str] = None
    pending_text: str = ""
    plain_lines: list[str] = field(default_factory=list)


def _content_blocks(obj: dict[str, Any]) -> list[dict[str, Any]]:
    message = obj.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _adapt_claude(obj: dict[str, Any], state: _ParserState) -> list[StreamEvent]:
    event_type = obj["type"]
    if event_type == "system":
        if obj.get("subtype") not in (None, "init"):
            return []
        return [InitEvent(session_id=obj.get("session_id"), model=obj.get("model"))]

    if event_type == "assistant":
        events: list[StreamEvent] = []
        for block in _content_blocks(obj):
            block_type = block.get("type")
            if block_type == "thinking" and isinstance(block.get("thinking"), str):
                events.append(MessageEvent(role="thinking", content=block["thinking"]))
            elif block_type == "text" and isinstance(block.get("text"), str):
                events.append(MessageEvent(role="assistant", content=block["text"]))
            elif block_type == "tool_use":
                events.append(
                    ToolCallEvent(
                        name=str(block.get("name") or "unknown"),
                        parameters=block.get("input"),
                        id=block.get("id"),
                    )
                )
        return events

    if event_type == "user":
        events = []
        for block in _content_blocks(obj):
            block_type = block.get("type")
            if block_type == "tool_result":
                events.append(
                    ToolResultEvent(
                        id=block.get("tool_use_id"),
                        status="error" if block.get("is_error") else "success",
                        output=stringify_output(block.get("content")),
                    )
                )
            elif block_type == "text" and isinstance(block.get("text"), str):
                events.append(MessageEvent(role="user", content=block["text"]))
        return events

    if event_type == "result" and isinstance(obj.get("result"), str):
        return [TerminalEvent(final_text=obj["result"], status="error" if obj.get("is_error") else "success")]
    return []


def extract_shell_command(full_command: Any) -> str:
    """Unwrap ``/bin/zsh -lc 'git status'`` into ``git status``."""
    if isinstance(full_command, list):
        full_command = " ".join(str(part) for part in full_command)
    text = str(full_command or "")
    match = _SHELL_WRAPPER_RE.search(text)
    if match:
        return match.group(1)
    return text


def _adapt_codex(obj: dict[str, Any], state: _ParserState) -> list[StreamEvent]:
    event_type = obj["type"]
    if event_type == "thread.started":
        return [InitEvent(session_id=obj.get("thread_id"))]

    if event_type in {"turn.completed", "turn.failed"}:
        final_text = state.last_assistant_text
        state.last_assistant_text = None
        return [TerminalEvent(final_text=final_text, status="error" if event_type == "turn.failed" else "success")]

    if event_type not in {"item.started", "item.completed"}:
        return []
    item = obj.get("item")
    if not isinstance(item, dict):
        return []
    item_type = item.get("type")

    if event_type == "item.started":
        if item_type == "command_execution":
            return [
                ToolCallEvent(
                    name="shell",
                    parameters={"command": extract_shell_command(item.get("command"))},
                    id=item.get("id"),
                )
            ]
        return []

    if item_type == "reasoning" and isinstance(item.get("text"), str):
        return [MessageEvent(role="thinking", content=item["text"])]
    if item_type == "agent_message" and isinstance(item.get("text"), str):
        state.last_assistant_text = item["text"]
        return [MessageEvent(role="assistant", content=item["text"])]
    if item_type == "command_execution":
        exit_code = item.get("exit_code")
        if exit_code is None and item.get("status") == "in_progress":
            status = "running"
        else:
            status = "success" if exit_code == 0 else "error"
        return [ToolResultEvent(id=item.get("id"), status=status, output=stringify_output(item.get("aggregated_output")))]
    return []


def _adapt_droid(obj: dict[str, Any], state: _ParserState) -> list[StreamEvent]:
    event_type = obj["type"]
    if event_type == "system":
        return [InitEvent(session_id=obj.get("session_id"), model=obj.get("model"))]
    if event_type == "message" and isinstance(obj.get("text"), str):
        role = "user" if obj.get("role") == "user" else "assistant"
        return [MessageEvent(role=role, content=obj["text"])]
    if event_type == "tool_call":
        return [
            ToolCallEvent(
                name=str(obj.get("toolName") or obj.get("toolId") or "unknown"),
                parameters=obj.get("parameters"),
                id=obj.get("id"),
            )
        ]
    if event_type == "tool_result":
        return [
            ToolResultEvent(
                id=obj.get("id"),
                status="error" if obj.get("isError") else "success",
                output=stringify_output(obj.get("value")),
            )
        ]
    if event_type == "completion" and isinstance(obj.get("finalText"), str):
        return [TerminalEvent(final_text=obj["finalText"])]
    return []


def _adapt_gemini(obj: dict[str, Any], state: _ParserState) -> list[StreamEvent]:
    event_type = obj["type"]
    if event_type == "init":
        return [InitEvent(session_id=obj.get("session_id"), model=obj.get("model"))]
    if event_type == "message" and isinstance(obj.get("content"), str):
        role = "user" if obj.get("role") == "user" else "assistant"
        is_delta = bool(obj.get("delta"))
        if role == "assistant":
            if is_delta:
                state.pending_text += obj["content"]
            else:
                state.pending_text = obj["content"]
        return [MessageEvent(role=role, content=obj["content"], is_delta=is_delta)]
    if event_type == "tool_use":
        return [
            ToolCallEvent(
                name=str(obj.get("tool_name") or "unknown"),
                parameters=obj.get("parameters"),
                id=obj.get("tool_id"),
            )
        ]
    if event_type == "tool_result":
        return [
            ToolResultEvent(
                id=obj.get("tool_id"),
                status="success" if obj.get("status") == "success" else "error",
                output=stringify_output(obj.get("output")),
            )
        ]
    if event_type == "result":
        final_text = state.pending_text or None
        state.pending_text = ""
        return [TerminalEvent(final_text=final_text, status="success" if obj.get("status", "success") == "success" else "error")]
    return []


def _pi_assistant_text(message: Any) -> str:
    if not isinstance(message, dict) or message.get("role") != "assistant":
        return ""
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    return "".join(
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    )


def _adapt_pi(obj: dict[str, Any], state: _ParserState) -> list[StreamEvent]:
    event_type = obj["type"]
    if event_type == "session":
        return [InitEvent(session_id=obj.get("id"), model=obj.get("model"))]
    if event_type == "agent_start":
        return [InitEvent()]

    if event_type == "message_update":
        update = obj.get("assistantMessageEvent")
        if not isinstance(update, dict):
            return []
        update_type = update.get("type")
        if update_type == "text_delta":
            return [MessageEvent(role="assistant", content=str(update.get("delta") or ""), is_delta=True)]
        if update_type == "thinking_delta":
            return [MessageEvent(role="thinking", content=str(update.get("delta") or ""), is_delta=True)]
        if update_type == "text_end":
            return [MessageEvent(role="assistant", content=str(update.get("content") or ""))]
        if update_type == "thinking_end":
            return [MessageEvent(role="thinking", content=str(update.get("content") or ""))]
        return []

    if event_type == "tool_execution_start":
        return [
            ToolCallEvent(
                name=str(obj.get("toolName") or "unknown"),
                parameters=obj.get("args"),
                id=obj.get("toolCallId"),
            )
        ]
    if event_type == "tool_execution_end":
        return [
            ToolResultEvent(
                id=obj.get("toolCallId"),
                status="error" if obj.get("isError") else "success",
                output=stringify_output(obj.get("result")),
            )
        ]

    if event_type == "turn_end":
        text = _pi_assistant_text(obj.get("message"))
        if text:
            state.last_assistant_text = text
        return [TerminalEvent(final_text=state.last_assistant_text)]
    if event_type == "agent_end":
        messages = obj.get("messages")
        if isinstance(messages, list):
            for message in reversed(messages):
                text = _pi_assistant_text(message)
                if text:
                    state.last_assistant_text = text
                    break
        return [TerminalEvent(final_text=state.last_assistant_text)]
    return []


_ADAPTERS: dict[str, Callable[[dict[str, Any], _ParserState], list[StreamEvent]]] = {
    "claude": _adapt_claude,
    "codex": _adapt_codex,
    "droid": _adapt_droid,
    "gemini": _adapt_gemini,
    "pi": _adapt_pi,
}


class StreamEventParser:
    """Stateful per-transcript parser for one agent family.

    Some protocols need memory across lines (Codex reports its answer in an
    ``agent_message`` item but ends the turn in a separate event; Gemini
    streams the answer as deltas), so use a fresh parser for each transcript.
    """

    def __init__(self, agent: str) -> None:
        if agent not in AGENT_TYPES:
            raise ValueError(f"Unknown agent '{agent}' (available: {', '.join(AGENT_TYPES)})")
        self.agent = agent
        self._state = _ParserState()

    @property
    def uses_jsonl(self) -> bool:
        return self.agent not in PLAIN_TEXT_AGENTS

    def parse_events(self, raw: str) -> list[StreamEvent]:
        """Return every canonical event carried by one transcript line."""
        if not self.uses_jsonl:
            line = raw.rstrip("\r\n")
            self._state.plain_lines.append(line)
            if not line.strip():
                return []
            return [MessageEvent(role="assistant", content=line)]

        obj = parse_json_object(raw, require_object_prefix=self.agent in _OBJECT_PREFIX_AGENTS)
        if obj is None:
            return []
        try:
            return _ADAPTERS[self.agent](obj, self._state)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed %s event: %.200s", self.agent, raw, exc_info=True)
            return []

    def parse_line(self, raw: str) -> Optional[StreamEvent]:
        """Return the first canonical event of a line, or ``None`` to skip it."""
        events = self.parse_events(raw)
        return events[0] if events else None

    def finish(self) -> list[StreamEvent]:
        """Events produced at end of stream (plain-text agents report their result here)."""
        if self.uses_jsonl:
            return []
        text = "\n".join(self._state.plain_lines).strip()
        self._state.plain_lines = []
        return [TerminalEvent(final_text=text or None)]


def iter_events(agent: str, transcript: str) -> Iterator[StreamEvent]:
    parser = StreamEventParser(agent)
    for line in transcript.splitlines():
        yield from parser.parse_events(line)
    yield from parser.finish()


def extract_result(agent: str, transcript: str) -> Optional[str]:
    """Return the final text of the last terminal event, or ``None`` if there is none."""
    if not transcript or not transcript.strip():
        return None
    last: Optional[TerminalEvent] = None
    for event in iter_events(agent, transcript):
        if isinstance(event, TerminalEvent):
            last = event
    return last.final_text if last is not None else None
