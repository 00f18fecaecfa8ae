"""Tests for session persistence."""
from datetime import timedelta
from unittest.mock import patch

import pytest

from searchrelay.models.events import EventKind
from searchrelay.models.session import SearchSession, SessionStatus, StreamEvent, utc_now
from searchrelay.services.database import PostgresSessionStore, _coerce_json_object
from searchrelay.services.session_store import (
    MemorySessionStore,
    create_session_store,
    format_result_content,
)


def _event(session: SearchSession, sequence: int, kind=EventKind.THINKING, payload="text"):
    return StreamEvent(
        session_id=session.id,
        sequence=sequence,
        kind=kind,
        payload=payload,
        timestamp=utc_now(),
        owner_id=session.owner_id,
        upstream_handle="thread-1",
    )


@pytest.mark.asyncio
async def test_record_and_lookup_session():
    store = MemorySessionStore()
    session = SearchSession(owner_id="u1", query="solar", metadata={"source": "web"})

    await store.record_session(session)

    assert await store.lookup_session_owner(session.id) == "u1"
    assert await store.lookup_session_owner("missing") is None
    row = await store.get_session(session.id)
    assert row["metadata"]["status"] == "INITIATED"
    assert row["metadata"]["source"] == "web"
    assert row["metadata"]["streamingEnabled"] is True
    assert row["result_count"] == 0


@pytest.mark.asyncio
async def test_update_status_merges_metadata():
    store = MemorySessionStore()
    session = SearchSession(owner_id="u1", query="solar")
    await store.record_session(session)

    await store.update_session_status(session.id, SessionStatus.PROCESSING, {"threadId": "t1"})
    await store.update_session_status(session.id, SessionStatus.COMPLETED, {"totalResults": 3})

    metadata = (await store.get_session(session.id))["metadata"]
    assert metadata["status"] == "COMPLETED"
    assert metadata["threadId"] == "t1"
    assert metadata["totalResults"] == 3


@pytest.mark.asyncio
async def test_update_unknown_session_raises():
    with pytest.raises(KeyError):
        await MemorySessionStore().update_session_status("missing", SessionStatus.FAILED)


@pytest.mark.asyncio
async def test_append_event_rejects_duplicate_sequence():
    store = MemorySessionStore()
    session = SearchSession(owner_id="u1", query="solar")
    await store.record_session(session)
    await store.append_event(_event(session, 1))

    with pytest.raises(ValueError):
        await store.append_event(_event(session, 1))


@pytest.mark.asyncio
async def test_events_are_ordered_and_paginated():
    store = MemorySessionStore()
    session = SearchSession(owner_id="u1", query="solar")
    await store.record_session(session)
    for sequence in (2, 1, 3):
        await store.append_event(_event(session, sequence))

    assert [e["sequence"] for e in await store.get_session_events(session.id, 10, 0)] == [1, 2, 3]
    assert [e["sequence"] for e in await store.get_session_events(session.id, 1, 1)] == [2]


@pytest.mark.asyncio
async def test_event_rows_carry_title_and_text_content():
    store = MemorySessionStore()
    session = SearchSession(owner_id="u1", query="solar")
    await store.record_session(session)
    await store.append_event(_event(session, 1, EventKind.REPORT, {"summary": "done"}))

    [row] = await store.get_session_events(session.id, 10, 0)
    assert row["title"] == "Final Analysis Report"
    assert row["result_type"] == "REPORT"
    assert row["content"] == '{\n  "summary": "done"\n}'
    assert row["source_service"] == "ira"


@pytest.mark.asyncio
async def test_list_sessions_filters_owner_newest_first():
    store = MemorySessionStore()
    now = utc_now()
    older = SearchSession(owner_id="u1", query="older", created_at=now - timedelta(minutes=5))
    newer = SearchSession(owner_id="u1", query="newer", created_at=now)
    other = SearchSession(owner_id="u2", query="other", created_at=now)
    for session in (older, newer, other):
        await store.record_session(session)
    await store.append_event(_event(newer, 1))

    rows = await store.list_sessions("u1", 10, 0)

    assert [r["query"] for r in rows] == ["newer", "older"]
    assert rows[0]["result_count"] == 1
    assert [r["query"] for r in await store.list_sessions("u1", 1, 1)] == ["older"]


@pytest.mark.asyncio
async def test_delete_session_returns_removed_result_count():
    store = MemorySessionStore()
    session = SearchSession(owner_id="u1", query="solar")
    await store.record_session(session)
    await store.append_event(_event(session, 1))
    await store.append_event(_event(session, 2))

    assert await store.delete_session(session.id) == 2
    assert await store.get_session(session.id) is None
    assert await store.delete_session(session.id) == 0


def test_format_result_content():
    assert format_result_content("plain") == "plain"
    assert format_result_content(["a"]) == '[\n  "a"\n]'


def test_coerce_json_object():
    assert _coerce_json_object({"a": 1}) == {"a": 1}
    assert _coerce_json_object('{"a": 1}') == {"a": 1}
    assert _coerce_json_object("[1, 2]") == {}
    assert _coerce_json_object("not json") == {}
    assert _coerce_json_object(None) == {}


def test_create_session_store_defaults_to_memory():
    with patch("searchrelay.services.session_store.settings") as mock_settings:
        mock_settings.database_url = ""
        assert isinstance(create_session_store(), MemorySessionStore)


def test_create_session_store_uses_postgres_when_configured():
    with patch("searchrelay.services.session_store.settings") as mock_settings:
        mock_settings.database_url = "postgresql://relay@localhost/relay"
        store = create_session_store()

    assert isinstance(store, PostgresSessionStore)
    assert store.dsn == "postgresql://relay@localhost/relay"
