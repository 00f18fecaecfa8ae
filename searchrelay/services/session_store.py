from __future__ import annotations

import json
from typing import Any, Protocol
from uuid import uuid4

from searchrelay.config import settings
from searchrelay.models.session import SearchSession, SessionStatus, StreamEvent, utc_now

SOURCE_SERVICE = "ira"


class SessionStore(Protocol):
    async def record_session(self, session: SearchSession) -> None: ...
    async def update_session_status(
        self, session_id: str, status: SessionStatus, extra: dict[str, Any] | None = None
    ) -> None: ...
    async def append_event(self, event: StreamEvent) -> None: ...
    async def lookup_session_owner(self, session_id: str) -> str | None: ...
    async def get_session(self, session_id: str) -> dict[str, Any] | None: ...
    async def list_sessions(self, owner_id: str, limit: int, offset: int) -> list[dict[str, Any]]: ...
    async def get_session_events(self, session_id: str, limit: int, offset: int) -> list[dict[str, Any]]: ...
    async def delete_session(self, session_id: str) -> int: ...
    async def close(self) -> None: ...


def format_result_content(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


def session_metadata(session: SearchSession) -> dict[str, Any]:
    return {
        **session.metadata,
        "status": session.status.value,
        "streamingEnabled": True,
        "initiatedAt": session.created_at.isoformat(),
    }


class MemorySessionStore:
    """In-process store used when no database is configured."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}
        self._events: dict[str, list[dict[str, Any]]] = {}

    async def record_session(self, session: SearchSession) -> None:
        self._sessions[session.id] = {
            "id": session.id,
            "user_id": session.owner_id,
            "query": session.query,
            "filters": session.filters,
            "metadata": session_metadata(session),
            "created_at": session.created_at,
        }
        self._events[session.id] = []

    async def update_session_status(
        self, session_id: str, status: SessionStatus, extra: dict[str, Any] | None = None
    ) -> None:
        row = self._sessions.get(session_id)
        if row is None:
            raise KeyError(f"Unknown search session: {session_id}")
        row["metadata"] = {**row["metadata"], **(extra or {}), "status": status.value}

    async def append_event(self, event: StreamEvent) -> None:
        events = self._events.get(event.session_id)
        if events is None:
            raise KeyError(f"Unknown search session: {event.session_id}")
        if any(row["sequence"] == event.sequence for row in events):
            raise ValueError(
                f"Duplicate sequence {event.sequence} for search {event.session_id}"
            )
        now = utc_now()
        events.append(
            {
                "id": str(uuid4()),
                "query_id": event.session_id,
                "user_id": event.owner_id,
                "thread_id": event.upstream_handle,
                "title": event.title,
                "content": format_result_content(event.payload),
                "result_type": event.kind.value,
                "sequence": event.sequence,
                "metadata": dict(event.metadata),
                "source_service": SOURCE_SERVICE,
                "created_at": event.timestamp,
                "updated_at": now,
            }
        )

    async def lookup_session_owner(self, session_id: str) -> str | None:
        row = self._sessions.get(session_id)
        return row["user_id"] if row else None

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        row = self._sessions.get(session_id)
        if row is None:
            return None
        return {**row, "result_count": len(self._events.get(session_id, []))}

    async def list_sessions(self, owner_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = [row for row in self._sessions.values() if row["user_id"] == owner_id]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return [
            {**row, "result_count": len(self._events.get(row["id"], []))}
            for row in rows[offset:offset + limit]
        ]

    async def get_session_events(self, session_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        events = sorted(self._events.get(session_id, []), key=lambda row: row["sequence"])
        return events[offset:offset + limit]

    async def delete_session(self, session_id: str) -> int:
        self._sessions.pop(session_id, None)
        return len(self._events.pop(session_id, []))

    async def close(self) -> None:
        return None


def create_session_store() -> SessionStore:
    """Postgres when DATABASE_URL is set, otherwise in-memory."""
    if settings.database_url:
        from searchrelay.services.database import PostgresSessionStore

        return PostgresSessionStore(settings.database_url)
    return MemorySessionStore()
