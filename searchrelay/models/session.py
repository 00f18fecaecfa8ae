from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from searchrelay.models.events import EventKind


class SessionStatus(str, Enum):
    INITIATED = "INITIATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


RESULT_TITLES = {
    EventKind.THINKING: "AI Analysis Process",
    EventKind.INTERMEDIATE: "Intermediate Finding",
    EventKind.REPORT: "Final Analysis Report",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def result_title(kind: EventKind) -> str:
    return RESULT_TITLES.get(kind, f"{kind.value} Result")


@dataclass
class SearchSession:
    owner_id: str
    query: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: SessionStatus = SessionStatus.INITIATED
    sequence_counter: int = 0
    upstream_handle: str | None = None
    filters: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class StreamEvent:
    session_id: str
    sequence: int
    kind: EventKind
    payload: Any
    timestamp: datetime
    owner_id: str | None = None
    upstream_handle: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return result_title(self.kind)
