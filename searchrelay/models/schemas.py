from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


# --- Requests ---


class StreamSearchRequest(BaseModel):
    query: str
    filters: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Search query is required")
        return value


# --- Responses ---


class StreamStartResponse(BaseModel):
    session_id: str
    upstream_handle: str | None
    query: str
    status: str
    streaming: bool = True
    message: str = "Search started. Connect to the events endpoint to receive results."


class StopResponse(BaseModel):
    session_id: str
    stopped: bool


class StatsResponse(BaseModel):
    active_sessions: int
    active_connections: int
    connections_per_session: dict[str, int]
    max_connections: int


class SearchSummary(BaseModel):
    id: str
    query: str
    filters: dict[str, Any] | None = None
    status: str | None = None
    metadata: dict[str, Any]
    result_count: int
    created_at: datetime


class HistoryResponse(BaseModel):
    searches: list[SearchSummary]
    limit: int
    offset: int


class SearchResultItem(BaseModel):
    id: str
    title: str
    content: str
    result_type: str
    sequence: int
    thread_id: str | None = None
    metadata: dict[str, Any]
    created_at: datetime


class SearchResultsResponse(BaseModel):
    search: SearchSummary
    results: list[SearchResultItem]
    limit: int
    offset: int


class DeleteResponse(BaseModel):
    session_id: str
    deleted_results: int
