"""Parser for Claude CLI output captured by the loop.

Handles the shapes the CLI produces: a single JSON result object
(``--output-format json``), a JSON array of events, line-delimited
stream-json events, and plain text. Also renders stream events for the
live display.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

FORMAT_JSON = "json"
FORMAT_STREAM = "stream"
FORMAT_TEXT = "text"


@dataclass
class ClaudeEvent:
    """A single parsed event from Claude CLI."""

    type: str  # system, assistant, user, result, stream_event
    raw: dict = field(default_factory=dict)

    @property
    def session_id(self) -> Optional[str]:
        return self.raw.get("session_id")


@dataclass
class ParsedOutput:
    """What the loop needs from one agent invocation's output."""

    format: str = FORMAT_TEXT
    session_id: Optional[str] = None
    result_text: str = ""
    is_error: bool = False
    cost_usd: float = 0.0
    num_turns: int = 0
    permission_denials: list[dict] = field(default_factory=list)
    exit_signal: Optional[bool] = None
    events: list[ClaudeEvent] = field(default_factory=list)

    @property
    def denied_commands(self) -> list[str]:
        """Denials rendered as tool names, Bash denials as ``Bash(<first two words>)``."""
        commands = []
        for denial in self.permission_denials:
            tool = str(denial.get("tool_name", "unknown"))
            if tool == "Bash":
                tool_input = denial.get("tool_input") or {}
                command = str(tool_input.get("command", "")) if isinstance(tool_input, dict) else ""
                words = command.split()[:2]
                commands.append(f"Bash({' '.join(words)})" if words else "Bash")
            else:
                commands.append(tool)
        return commands


def parse_ndjson_line(line: str) -> Optional[ClaudeEvent]:
    """Parse a single NDJSON line into a ClaudeEvent."""
    stripped = line.strip()
    if not stripped:
        return None

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        logger.debug("Skipping non-JSON line: %s (error: %s)", stripped[:200], e)
        return None

    if not isinstance(data, dict):
        return None
    return ClaudeEvent(type=data.get("type", "unknown"), raw=data)


def parse_output(raw: str) -> ParsedOutput:
    """Parse captured agent output of any supported shape."""
    stripped = raw.strip()
    if not stripped:
        return ParsedOutput()

    if stripped[0] in "{[":
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            parsed = ParsedOutput(format=FORMAT_JSON)
            _apply_result(data, parsed)
            return parsed
        if isinstance(data, list):
            events = [
                ClaudeEvent(type=item.get("type", "unknown"), raw=item)
                for item in data
                if isinstance(item, dict)
            ]
            parsed = process_events(events)
            parsed.format = FORMAT_JSON
            return parsed

        events = [e for e in map(parse_ndjson_line, stripped.splitlines()) if e]
        if events:
            return process_events(events)

    return ParsedOutput(format=FORMAT_TEXT, result_text=raw)


def process_events(events: list[ClaudeEvent]) -> ParsedOutput:
    """Fold a list of stream events into a ParsedOutput."""
    parsed = ParsedOutput(format=FORMAT_STREAM, events=events)
    assistant_text: list[str] = []
    saw_result = False

    for event in events:
        if event.type in ("init", "system"):
            if event.session_id and not parsed.session_id:
                parsed.session_id = event.session_id

        elif event.type == "assistant":
            message = event.raw.get("message") or {}
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                    assistant_text.append(block["text"])

        elif event.type == "result":
            _apply_result(event.raw, parsed)
            saw_result = True

    if not saw_result or not parsed.result_text:
        parsed.result_text = "\n".join(assistant_text)
    return parsed


def _apply_result(data: dict, parsed: ParsedOutput) -> None:
    """Copy the fields of a result object onto ``parsed``."""
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    session_id = data.get("session_id") or metadata.get("session_id")
    if session_id:
        parsed.session_id = str(session_id)

    result = data.get("result", "")
    parsed.result_text = result if isinstance(result, str) else json.dumps(result)
    parsed.is_error = bool(data.get("is_error", False))
    parsed.cost_usd = float(data.get("total_cost_usd", 0.0) or 0.0)
    parsed.num_turns = int(data.get("num_turns", 0) or 0)

    denials = data.get("permission_denials") or []
    parsed.permission_denials = [d for d in denials if isinstance(d, dict)]

    exit_signal = data.get("exit_signal")
    if isinstance(exit_signal, bool):
        parsed.exit_signal = exit_signal


def render_stream_event(line: str) -> str:
    """Display text for one stream-json line: text deltas and ``[Tool]`` markers."""
    event = parse_ndjson_line(line)
    if event is None or event.type != "stream_event":
        return ""

    inner = event.raw.get("event") or {}
    inner_type = inner.get("type")
    if inner_type == "content_block_delta":
        delta = inner.get("delta") or {}
        if delta.get("type") == "text_delta":
            return str(delta.get("text", ""))
    elif inner_type == "content_block_start":
        block = inner.get("content_block") or {}
        if block.get("type") == "tool_use":
            return f"\n\n[{block.get('name', 'tool')}]\n"
    elif inner_type == "content_block_stop":
        return "\n"
    return ""
