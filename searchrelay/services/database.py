"""PostgreSQL session store using asyncpg."""

from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

import asyncpg

from searchrelay.config import settings
from searchrelay.models.session import SearchSession, SessionStatus, StreamEvent
from searchrelay.services import logger as log_service
from searchrelay.services.session_store import (
    SOURCE_SERVICE,
    format_result_content,
    session_metadata,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS search_queries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    query TEXT NOT NULL,
    filters JSONB,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS search_results (
    id TEXT PRIMARY KEY,
    query_id TEXT NOT NULL REFERENCES search_queries(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    thread_id TEXT,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    result_type TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    score DOUBLE PRECISION,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    source_service TEXT NOT NULL DEFAULT 'ira',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (query_id, sequence)
);

CREATE INDEX IF NOT EXISTS search_results_user_id_created_at_idx
    ON search_results (user_id, created_at);
CREATE INDEX IF NOT EXISTS search_results_thread_id_idx
    ON search_results (thread_id);
"""


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON-string fields into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _session_row(record: asyncpg.Record) -> dict[str, Any]:
    row = dict(record)
    row["metadata"] = _coerce_json_object(row.get("metadata"))
    if row.get("filters") is not None:
        row["filters"] = _coerce_json_object(row["filters"])
    return row


class PostgresSessionStore:
    def __init__(self, dsn: str, *, max_size: int | None = None):
        self.dsn = dsn
        self.max_size = max_size or settings.database_pool_max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        """Get or create the connection pool, creating the schema on first use."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=self.max_size)
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA)
            log_service.log_db_operation("create_pool", "search_queries", "success")
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # --- Sessions ---

    async def record_session(self, session: SearchSession) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO search_queries (id, user_id, query, filters, metadata, created_at)
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6)
                """,
                session.id,
                session.owner_id,
                session.query,
                json.dumps(session.filters) if session.filters is not None else None,
                json.dumps(session_metadata(session), default=str),
                session.created_at,
            )
        log_service.log_db_operation("insert", "search_queries", "success", details=session.id)

    async def update_session_status(
        self, session_id: str, status: SessionStatus, extra: dict[str, Any] | None = None
    ) -> None:
        patch = {**(extra or {}), "status": status.value}
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE search_queries
                SET metadata = COALESCE(metadata, '{}'::jsonb) || $2::jsonb
                WHERE id = $1
                """,
                session_id,
                json.dumps(patch, default=str),
            )
        if result.endswith(" 0"):
            raise KeyError(f"Unknown search session: {session_id}")
        log_service.log_db_operation(
            "update", "search_queries", "success", details=f"{session_id} -> {status.value}"
        )

    async def lookup_session_owner(self, session_id: str) -> str | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT user_id FROM search_queries WHERE id = $1",
                session_id,
            )

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.fetchrow(
                """
                SELECT q.id, q.user_id, q.query, q.filters, q.metadata, q.created_at,
                       (SELECT count(*) FROM search_results r WHERE r.query_id = q.id) AS result_count
                FROM search_queries q
                WHERE q.id = $1
                """,
                session_id,
            )
            return _session_row(result) if result else None

    async def list_sessions(self, owner_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            results = await conn.fetch(
                """
                SELECT q.id, q.user_id, q.query, q.filters, q.metadata, q.created_at,
                       (SELECT count(*) FROM search_results r WHERE r.query_id = q.id) AS result_count
                FROM search_queries q
                WHERE q.user_id = $1
                ORDER BY q.created_at DESC
                LIMIT $2 OFFSET $3
                """,
                owner_id,
                limit,
                offset,
            )
            return [_session_row(r) for r in results]

    async def delete_session(self, session_id: str) -> int:
        """Delete a session; its events go with it through the cascade."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                count = await conn.fetchval(
                    "SELECT count(*) FROM search_results WHERE query_id = $1",
                    session_id,
                )
                await conn.execute("DELETE FROM search_queries WHERE id = $1", session_id)
        log_service.log_db_operation("delete", "search_queries", "success", details=session_id)
        return int(count or 0)

    # --- Events ---

    async def append_event(self, event: StreamEvent) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO search_results
                    (id, query_id, user_id, thread_id, title, content, result_type,
                     sequence, metadata, source_service, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, now())
                """,
                str(uuid4()),
                event.session_id,
                event.owner_id,
                event.upstream_handle,
                event.title,
                format_result_content(event.payload),
                event.kind.value,
                event.sequence,
                json.dumps(event.metadata, default=str),
                SOURCE_SERVICE,
                event.timestamp,
            )

    async def get_session_events(self, session_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            results = await conn.fetch(
                """
                SELECT id, query_id, user_id, thread_id, title, content, result_type,
                       sequence, metadata, source_service, created_at, updated_at
                FROM search_results
                WHERE query_id = $1
                ORDER BY sequence
                LIMIT $2 OFFSET $3
                """,
                session_id,
                limit,
                offset,
            )
            rows = []
            for r in results:
                row = dict(r)
                row["metadata"] = _coerce_json_object(row.get("metadata"))
                rows.append(row)
            return rows
