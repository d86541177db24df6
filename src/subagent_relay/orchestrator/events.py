"""Decoding of the newline-delimited JSON event stream emitted by worker agents.

Each stdout line is decoded on its own. Only two event kinds change the
invocation result:

- ``message_end``: a transcript message (user, assistant, ...) is complete.
- ``tool_result_end``: a tool execution result message is complete.

Blank lines, invalid JSON, non-object payloads and unknown event kinds are
dropped without failing the stream.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any

from subagent_relay.orchestrator.models import (
    AgentMessage,
    ContentPart,
    OtherPart,
    TextPart,
    ToolCallPart,
)

EVENT_MESSAGE_END = "message_end"
EVENT_TOOL_RESULT_END = "tool_result_end"


@dataclass(slots=True)
class MessageEndEvent:
    message: AgentMessage


@dataclass(slots=True)
class ToolResultEndEvent:
    message: AgentMessage


StreamEvent = MessageEndEvent | ToolResultEndEvent


def decode_event(line: str) -> StreamEvent | None:
    """Decode one stdout line, returning ``None`` for anything not actionable."""

    if not line.strip():
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind not in (EVENT_MESSAGE_END, EVENT_TOOL_RESULT_END):
        return None
    message = parse_message(payload.get("message"))
    if message is None:
        return None
    if kind == EVENT_MESSAGE_END:
        return MessageEndEvent(message=message)
    return ToolResultEndEvent(message=message)


def parse_message(raw: Any) -> AgentMessage | None:
    """Build a typed message from its wire form, or ``None`` if it has no role."""

    if not isinstance(raw, dict):
        return None
    role = raw.get("role")
    if not isinstance(role, str) or not role:
        return None

    content_raw = raw.get("content")
    parts: list[ContentPart] = []
    if isinstance(content_raw, str):
        parts.append(TextPart(text=content_raw))
    elif isinstance(content_raw, list):
        for item in content_raw:
            part = _parse_part(item)
            if part is not None:
                parts.append(part)

    usage = raw.get("usage")
    return AgentMessage(
        role=role,
        content=parts,
        model=_optional_str(raw.get("model")),
        stop_reason=_optional_str(raw.get("stopReason")),
        error_message=_optional_str(raw.get("errorMessage")),
        usage=usage if isinstance(usage, dict) else None,
        tool_name=_optional_str(raw.get("toolName")),
    )


class LineBuffer:
    """Splits arbitrary byte chunks into complete text lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    def flush(self) -> str | None:
        self._pending += self._decoder.decode(b"", final=True)
        remainder, self._pending = self._pending, ""
        return remainder if remainder.strip() else None


def _parse_part(raw: Any) -> ContentPart | None:
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "text":
        text = raw.get("text")
        return TextPart(text=text) if isinstance(text, str) else None
    if kind == "toolCall":
        name = raw.get("name")
        if not isinstance(name, str):
            return None
        arguments = raw.get("arguments")
        return ToolCallPart(name=name, arguments=arguments if isinstance(arguments, dict) else {})
    if isinstance(kind, str):
        return OtherPart(type=kind, payload={k: v for k, v in raw.items() if k != "type"})
    return None


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
