from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from searchrelay.models.events import EventKind, SignalType, SSEEvent


def iso_timestamp(moment: datetime | None = None) -> str:
    """UTC timestamp in the millisecond `...Z` form browsers produce."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def connected(session_id: str) -> SSEEvent:
    return SSEEvent(
        event=SignalType.CONNECTED,
        data={"searchId": session_id, "timestamp": iso_timestamp()},
    )


def heartbeat() -> SSEEvent:
    return SSEEvent(event=SignalType.HEARTBEAT, data={"timestamp": iso_timestamp()})


def disconnect() -> SSEEvent:
    return SSEEvent(
        event=SignalType.DISCONNECT,
        data={"message": "Connection closed by server"},
    )


def status(status_value: str, message: str, **kwargs: Any) -> SSEEvent:
    """Informational session status update."""
    return SSEEvent(
        event=SignalType.STATUS,
        data={
            "status": status_value,
            "message": message,
            **kwargs,
            "timestamp": iso_timestamp(),
        },
    )


def result_payload(
    kind: EventKind,
    content: Any,
    sequence: int | None,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Body of a classified result as delivered to listeners."""
    data: dict[str, Any] = {
        "type": kind.value,
        "content": content,
        "sequence": sequence,
        "timestamp": iso_timestamp(timestamp),
    }
    if metadata:
        data["metadata"] = metadata
    return data


def complete(session_id: str, total_results: int, duration_ms: int) -> SSEEvent:
    return SSEEvent(
        event=SignalType.COMPLETE,
        data={
            "searchId": session_id,
            "totalResults": total_results,
            "duration": duration_ms,
            "timestamp": iso_timestamp(),
        },
    )


def error(message: str, code: str = "SEARCH_FAILED") -> SSEEvent:
    return SSEEvent(
        event=SignalType.ERROR,
        data={"message": message, "code": code, "timestamp": iso_timestamp()},
    )
