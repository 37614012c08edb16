"""Agent stream protocols and display rendering."""

from .display import DeltaBuffer, StreamDisplay, format_for_display
from .events import InitEvent, MessageEvent, StreamEvent, TerminalEvent, ToolCallEvent, ToolResultEvent
from .parsers import AGENT_TYPES, StreamEventParser, extract_result

__all__ = [
    "AGENT_TYPES",
    "DeltaBuffer",
    "InitEvent",
    "MessageEvent",
    "StreamDisplay",
    "StreamEvent",
    "StreamEventParser",
    "TerminalEvent",
    "ToolCallEvent",
    "ToolResultEvent",
    "extract_result",
    "format_for_display",
]
