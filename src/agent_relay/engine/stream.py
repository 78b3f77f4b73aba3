"""Engine output stream parsing into typed `OutputEvent` values."""

from __future__ import annotations

import json
import math
import threading
from collections import deque
from typing import Any

from agent_relay.engine.models import OutputEvent, ResultMetadata

TOOL_DETAIL_MAX_CHARS = 120

_TOOL_DETAIL_KEYS: tuple[str, ...] = (
    "command",
    "file_path",
    "path",
    "pattern",
    "query",
    "url",
    "prompt",
    "description",
)


def parse_stream_line(line: str) -> dict[str, Any] | None:
    """Parse one stream line; non-JSON content degrades to a raw text record."""

    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return {"type": "text", "content": trimmed}
    if not isinstance(parsed, dict):
        return {"type": "text", "content": trimmed}
    return parsed


def tool_detail(tool_input: object, *, max_chars: int = TOOL_DETAIL_MAX_CHARS) -> str:
    """Pick the most descriptive field of a tool invocation input."""

    if not isinstance(tool_input, dict):
        return ""
    for key in _TOOL_DETAIL_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return _truncate(" ".join(value.split()), max_chars)
    return ""


class StreamParser:
    """Stateful classifier turning parsed records into output events.

    Tracks assistant message boundaries to number turns and holds the
    terminal result metadata once the engine reports it.
    """

    def __init__(self) -> None:
        self.turns = 0
        self.result: ResultMetadata | None = None
        self._last_message_id: str | None = None

    def feed_line(self, line: str) -> list[OutputEvent]:
        record = parse_stream_line(line)
        if record is None:
            return []
        return self.classify(record)

    def classify(self, record: dict[str, Any]) -> list[OutputEvent]:  # noqa: C901
        record_type = record.get("type")

        if record_type == "result":
            self.result = _result_metadata(record)
            return []

        if record_type == "assistant":
            return self._assistant_events(record)

        if record_type == "message_start":
            return [self._next_turn()]

        if record_type == "content_block_delta":
            delta = record.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str) and delta["text"]:
                return [OutputEvent.chunk(delta["text"])]
            return []

        if record_type == "content_block_start":
            block = record.get("content_block")
            if isinstance(block, dict):
                return _block_events(block)
            return []

        if record_type == "text":
            content = record.get("content")
            if isinstance(content, str) and content:
                return [OutputEvent.chunk(content)]
            return []

        if record_type == "system":
            message = record.get("message")
            if not isinstance(message, str) or not message:
                message = str(record.get("subtype") or "system")
            return [OutputEvent.system(message)]

        error = record.get("error")
        if error:
            return [OutputEvent.system(_error_message(error))]
        return []

    def _assistant_events(self, record: dict[str, Any]) -> list[OutputEvent]:
        message = record.get("message")
        if not isinstance(message, dict):
            return []

        events: list[OutputEvent] = []
        message_id = message.get("id")
        if not isinstance(message_id, str) or message_id != self._last_message_id:
            events.append(self._next_turn())
        self._last_message_id = message_id if isinstance(message_id, str) else None

        content = message.get("content")
        if isinstance(content, str):
            if content:
                events.append(OutputEvent.chunk(content))
            return events
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict):
                    events.extend(_block_events(block))

        error = record.get("error")
        if error:
            events.append(OutputEvent.system(_error_message(error)))
        return events

    def _next_turn(self) -> OutputEvent:
        self.turns += 1
        return OutputEvent.turn(self.turns)


class TextAccumulator:
    """UTF-8 byte-capped text buffer; appends past the cap are dropped."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self.truncated = False
        self._parts: list[str] = []
        self._size = 0

    def append(self, text: str) -> None:
        if not text:
            return
        remaining = self.max_bytes - self._size
        if remaining <= 0:
            self.truncated = True
            return
        encoded = text.encode("utf-8")
        if len(encoded) > remaining:
            text = encoded[:remaining].decode("utf-8", errors="ignore")
            encoded = text.encode("utf-8")
            self.truncated = True
        self._parts.append(text)
        self._size += len(encoded)

    @property
    def size_bytes(self) -> int:
        return self._size

    def text(self) -> str:
        return "".join(self._parts)


class EventBuffer:
    """Fixed-size replay buffer; oldest events are evicted first."""

    def __init__(self, max_events: int) -> None:
        self._events: deque[OutputEvent] = deque(maxlen=max(1, max_events))
        self._lock = threading.Lock()

    def push(self, event: OutputEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> tuple[OutputEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def _block_events(block: dict[str, Any]) -> list[OutputEvent]:
    block_type = block.get("type")
    if block_type == "text":
        text = block.get("text")
        if isinstance(text, str) and text:
            return [OutputEvent.chunk(text)]
        return []
    if block_type in {"tool_use", "server_tool_use"}:
        name = block.get("name")
        return [OutputEvent.tool(str(name or "tool"), tool_detail(block.get("input")))]
    return []


def _result_metadata(record: dict[str, Any]) -> ResultMetadata:
    cost = record.get("total_cost_usd", record.get("cost_usd"))
    result_text = record.get("result")
    if isinstance(result_text, dict):
        content = result_text.get("content")
        if isinstance(content, list):
            result_text = "".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
        else:
            result_text = None
    is_error = bool(record.get("is_error")) or str(record.get("subtype", "")).startswith("error")
    return ResultMetadata(
        cost_usd=_as_float(cost),
        duration_ms=int(_as_float(record.get("duration_ms"))),
        num_turns=int(_as_float(record.get("num_turns"))),
        session_id=str(record.get("session_id") or ""),
        is_error=is_error,
        errors=_collect_errors(record),
        result_text=result_text if isinstance(result_text, str) else None,
    )


def _collect_errors(record: dict[str, Any]) -> tuple[str, ...]:
    raw = record.get("errors")
    collected: list[str] = []
    if isinstance(raw, list):
        for item in raw:
            message = _error_message(item)
            if message:
                collected.append(message)
    single = record.get("error")
    if single:
        collected.append(_error_message(single))
    return tuple(collected)


def _error_message(error: object) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return json.dumps(error, ensure_ascii=False)
    return str(error)


def _as_float(value: object) -> float:
    if isinstance(value, bool):
        return 0.0
    if not isinstance(value, int | float | str):
        return 0.0
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."
