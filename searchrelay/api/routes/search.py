from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sse_starlette.sse import EventSourceResponse

from searchrelay.api.deps import get_identity, get_orchestrator, get_store, get_token
from searchrelay.api.transport import QueueTransport
from searchrelay.errors import (
    CapacityExceeded,
    RelayError,
    SearchValidationError,
    SessionAccessDenied,
    SessionNotFound,
    UpstreamRejected,
    UpstreamUnavailable,
)
from searchrelay.models.schemas import (
    DeleteResponse,
    HistoryResponse,
    SearchResultItem,
    SearchResultsResponse,
    SearchSummary,
    StatsResponse,
    StopResponse,
    StreamSearchRequest,
    StreamStartResponse,
)
from searchrelay.services import logger as log_service
from searchrelay.services.auth import Identity
from searchrelay.services.orchestrator import StreamOrchestrator
from searchrelay.services.session_store import SessionStore

router = APIRouter(prefix="/api/search", tags=["search"])


def _summary(row: dict[str, Any]) -> SearchSummary:
    metadata = row.get("metadata") or {}
    return SearchSummary(
        id=row["id"],
        query=row["query"],
        filters=row.get("filters"),
        status=metadata.get("status"),
        metadata=metadata,
        result_count=int(row.get("result_count") or 0),
        created_at=row["created_at"],
    )


async def _owned_session(store: SessionStore, session_id: str, identity: Identity) -> dict[str, Any]:
    row = await store.get_session(session_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Search not found")
    if row["user_id"] != identity.id:
        raise HTTPException(status_code=403, detail="Access denied to this search")
    return row


@router.post("/stream", response_model=StreamStartResponse)
async def start_stream(
    request: StreamSearchRequest,
    identity: Identity = Depends(get_identity),
    credential: str = Depends(get_token),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """Start a streamed search. Connect to /{session_id}/events for results."""
    try:
        result = await orchestrator.start(
            identity.id,
            credential,
            request.query,
            request.metadata,
            filters=request.filters,
        )
    except SearchValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except UpstreamRejected as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    except UpstreamUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    log_service.log_event(
        event_type="search_started",
        message="Streaming search started",
        session_id=result.session_id,
        user_id=identity.id,
        query=request.query[:100],
    )
    return StreamStartResponse(
        session_id=result.session_id,
        upstream_handle=result.upstream_handle,
        query=result.query,
        status=result.status.value,
    )


@router.get("/stats", response_model=StatsResponse)
async def stream_stats(
    identity: Identity = Depends(get_identity),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    return StatsResponse(**orchestrator.get_stats())


@router.get("/history", response_model=HistoryResponse)
async def search_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    rows = await store.list_sessions(identity.id, limit, offset)
    return HistoryResponse(searches=[_summary(r) for r in rows], limit=limit, offset=offset)


@router.get("/{session_id}/events")
async def stream_events(
    session_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
):
    """SSE endpoint delivering a session's live events."""
    transport = QueueTransport()
    try:
        connection_id = await orchestrator.attach_listener(session_id, identity.id, transport)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except SessionAccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    except CapacityExceeded as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except RelayError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    async def event_generator():
        try:
            async for chunk in transport:
                yield chunk
        finally:
            await orchestrator.detach_listener(connection_id)

    return EventSourceResponse(event_generator())


@router.post("/{session_id}/stop", response_model=StopResponse)
async def stop_stream(
    session_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
    store: SessionStore = Depends(get_store),
):
    await _owned_session(store, session_id, identity)
    if not await orchestrator.stop(session_id):
        raise HTTPException(status_code=404, detail="No active stream for this search")
    return StopResponse(session_id=session_id, stopped=True)


@router.get("/{session_id}/results", response_model=SearchResultsResponse)
async def search_results(
    session_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    row = await _owned_session(store, session_id, identity)
    events = await store.get_session_events(session_id, limit, offset)
    return SearchResultsResponse(
        search=_summary(row),
        results=[SearchResultItem(**e) for e in events],
        limit=limit,
        offset=offset,
    )


@router.get("/{session_id}", response_model=SearchSummary)
async def get_search(
    session_id: str,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    """Current status and result count of one search."""
    return _summary(await _owned_session(store, session_id, identity))


@router.delete("/{session_id}", response_model=DeleteResponse)
async def delete_search(
    session_id: str,
    identity: Identity = Depends(get_identity),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
    store: SessionStore = Depends(get_store),
):
    await _owned_session(store, session_id, identity)
    if orchestrator.is_active(session_id):
        await orchestrator.stop(session_id)
    deleted = await store.delete_session(session_id)
    return DeleteResponse(session_id=session_id, deleted_results=deleted)
