from __future__ import annotations

from typing import Any

from searchrelay.models.events import EventKind, Frame, NormalizedEvent, dump_json


def _source_sequence(frame: Frame) -> int:
    try:
        return int(frame.id) if frame.id is not None else 0
    except ValueError:
        return 0


def _message_text(content: Any) -> Any:
    """Text of a chat message body; block lists are flattened to their text parts."""
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts)
    return content


def _classify_values(data: Any, sequence: int) -> NormalizedEvent | None:
    if not isinstance(data, dict):
        return None

    messages = data.get("messages")
    if isinstance(messages, list) and messages:
        last = messages[-1]
        text = _message_text(last.get("content")) if isinstance(last, dict) else None
        if text:
            return NormalizedEvent(EventKind.THINKING, text, sequence)

    final_result = data.get("final_result")
    if final_result:
        return NormalizedEvent(EventKind.REPORT, final_result, sequence)
    return None


def _classify_messages(data: Any, sequence: int) -> NormalizedEvent | None:
    if not isinstance(data, list) or not data:
        return None

    last = data[-1]
    if not isinstance(last, dict):
        return None
    text = _message_text(last.get("content"))
    if not text:
        return None

    tool_calls = last.get("tool_calls") or []
    kind = EventKind.THINKING if tool_calls else EventKind.INTERMEDIATE
    return NormalizedEvent(
        kind,
        text,
        sequence,
        metadata={"messageType": last.get("type"), "toolCalls": tool_calls},
    )


def classify(frame: Frame) -> NormalizedEvent | None:
    """Map one upstream frame to a normalized event, or None to drop it."""
    if frame.data is None or frame.data == "":
        return None

    sequence = _source_sequence(frame)

    if frame.event == "metadata":
        return NormalizedEvent(EventKind.METADATA, frame.data, sequence)
    if frame.event == "values":
        return _classify_values(frame.data, sequence)
    if frame.event == "messages":
        return _classify_messages(frame.data, sequence)

    # Unknown frame kinds are kept as text rather than dropped
    return NormalizedEvent(EventKind.INTERMEDIATE, dump_json(frame.data), sequence)
