"""Human-readable rendering of canonical stream events."""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

from .events import (
    InitEvent,
    MessageEvent,
    StreamEvent,
    TerminalEvent,
    ToolCallEvent,
    ToolResultEvent,
    parse_json_object,
    strip_system_reminders,
)
from .parsers import StreamEventParser

logger = logging.getLogger(__name__)

MAX_CHUNK_LENGTH = 160

THINKING_LABEL = "--- Thinking ---"
OUTPUT_LABEL = "--- Output ---"
RESULT_LABEL = "=== Result ==="

_SENTENCE_BOUNDARY_RE = re.compile(r"[.!?] ")


def _format_parameters(parameters: object) -> str:
    if isinstance(parameters, str):
        return parameters
    try:
        return json.dumps(parameters, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(parameters)


def format_for_display(event: StreamEvent) -> Optional[str]:
    """Render one event with its fixed label, or ``None`` when it is not shown."""
    if isinstance(event, InitEvent):
        return None
    if isinstance(event, MessageEvent):
        if event.role == "user":
            return None
        if event.role == "thinking":
            return f"{THINKING_LABEL}\n{event.content}"
        return event.content
    if isinstance(event, ToolCallEvent):
        header = f"--- Tool: {event.name} ---"
        if event.parameters is None:
            return header
        return f"{header}\nInput: {_format_parameters(event.parameters)}"
    if isinstance(event, ToolResultEvent):
        output = strip_system_reminders(event.output)
        if not output:
            return ""
        return f"{OUTPUT_LABEL}\n{output}"
    if isinstance(event, TerminalEvent):
        if not event.final_text:
            return None
        return f"{RESULT_LABEL}\n{event.final_text}"
    return None


class DeltaBuffer:
    """Accumulates streamed fragments of one block and releases readable chunks.

    Chunks are released at the last paragraph or sentence boundary in the
    buffer, or at ``max_chunk_length`` characters when neither is present.
    Chunks are never normalized: joining everything a block emits reproduces
    the streamed fragments exactly.
    """

    def __init__(self, max_chunk_length: int = MAX_CHUNK_LENGTH) -> None:
        if max_chunk_length <= 0:
            raise ValueError("max_chunk_length must be positive")
        self.max_chunk_length = max_chunk_length
        self._buffer = ""
        self._streamed = False

    @property
    def active(self) -> bool:
        """True while a block has received fragments and not yet ended."""
        return self._streamed or bool(self._buffer)

    def push(self, delta: str) -> list[str]:
        if not delta:
            return []
        self._buffer += delta
        self._streamed = True
        return self._drain()

    def end_block(self, content: Optional[str] = None) -> list[str]:
        """Close the block; ``content`` is used only if nothing was streamed."""
        if not self._streamed and not self._buffer and content:
            self._buffer = content
        chunks = self.flush()
        self._streamed = False
        return chunks

    def flush(self) -> list[str]:
        if not self._buffer:
            return []
        chunk, self._buffer = self._buffer, ""
        return [chunk]

    def _split_index(self) -> int:
        paragraph = self._buffer.rfind("\n\n")
        if paragraph >= 0:
            return paragraph + 2
        sentence = -1
        for match in _SENTENCE_BOUNDARY_RE.finditer(self._buffer):
            sentence = match.end()
        if sentence > 0:
            return sentence
        if len(self._buffer) > self.max_chunk_length:
            return self.max_chunk_length
        return 0

    def _drain(self) -> list[str]:
        chunks: list[str] = []
        while self._buffer:
            index = self._split_index()
            if index <= 0:
                break
            chunks.append(self._buffer[:index])
            self._buffer = self._buffer[index:]
        return chunks


class StreamDisplay:
    """Turns raw agent stdout lines into display chunks.

    Lines of JSON protocols that are not JSON at all (banners, warnings) are
    passed through verbatim so nothing the agent prints is hidden.
    """

    def __init__(self, agent: str, max_chunk_length: int = MAX_CHUNK_LENGTH) -> None:
        self.parser = StreamEventParser(agent)
        self._buffers = {
            "assistant": DeltaBuffer(max_chunk_length),
            "thinking": DeltaBuffer(max_chunk_length),
        }
        self._labelled = {"assistant": False, "thinking": False}
        self._block_text = {"assistant": "", "thinking": ""}
        self._last_assistant_text = ""

    def feed(self, line: str) -> list[str]:
        events = self.parser.parse_events(line)
        if not events:
            if self.parser.uses_jsonl and line.strip() and parse_json_object(line) is None:
                return [line.rstrip("\r\n")]
            return []
        output: list[str] = []
        for event in events:
            output.extend(self._render(event))
        return output

    def close(self) -> list[str]:
        output: list[str] = []
        for event in self.parser.finish():
            output.extend(self._render(event))
        output.extend(self._end_all_blocks())
        return output

    def _render(self, event: StreamEvent) -> list[str]:
        if isinstance(event, MessageEvent) and event.role in self._buffers:
            buffer = self._buffers[event.role]
            if event.is_delta:
                return self._emit(event.role, buffer.push(event.content))
            if buffer.active:
                return self._end_block(event.role, event.content)
            if event.role == "assistant":
                self._last_assistant_text = event.content

        if isinstance(event, TerminalEvent):
            output = self._end_all_blocks()
            if event.final_text and event.final_text.strip() != self._last_assistant_text.strip():
                output.append(f"{RESULT_LABEL}\n{event.final_text}")
            return output

        text = format_for_display(event)
        return [text] if text else []

    def _emit(self, role: str, chunks: list[str]) -> list[str]:
        output: list[str] = []
        for chunk in chunks:
            self._block_text[role] += chunk
            if not chunk.strip():
                continue
            if role == "thinking" and not self._labelled[role]:
                self._labelled[role] = True
                output.append(f"{THINKING_LABEL}\n{chunk}")
            else:
                output.append(chunk)
        return output

    def _end_block(self, role: str, content: Optional[str] = None) -> list[str]:
        output = self._emit(role, self._buffers[role].end_block(content))
        if role == "assistant" and self._block_text[role]:
            self._last_assistant_text = self._block_text[role]
        self._block_text[role] = ""
        self._labelled[role] = False
        return output

    def _end_all_blocks(self) -> list[str]:
        output: list[str] = []
        for role in ("thinking", "assistant"):
            if self._buffers[role].active:
                output.extend(self._end_block(role))
        return output
