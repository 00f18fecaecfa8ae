from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from loguru import logger

from searchrelay.config import settings
from searchrelay.errors import (
    PersistenceWriteError,
    SearchValidationError,
    SessionAccessDenied,
    SessionNotFound,
)
from searchrelay.models.events import EventKind, Frame, SSEEvent
from searchrelay.models.session import SearchSession, SessionStatus, StreamEvent, utc_now
from searchrelay.services import logger as log_service
from searchrelay.services import streaming
from searchrelay.services.broadcast import BroadcastHub, Transport
from searchrelay.services.classifier import classify
from searchrelay.services.session_store import SessionStore

STOPPED_MESSAGE = "Stream stopped by user"
SHUTDOWN_MESSAGE = "Server shutting down"


class UpstreamClient(Protocol):
    async def open_session(self, credential: str, context: dict[str, Any] | None = None) -> str: ...
    async def open_stream(
        self,
        upstream_handle: str,
        credential: str,
        query: str,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[Frame]: ...


@dataclass
class StreamStartResult:
    session_id: str
    upstream_handle: str | None
    query: str
    status: SessionStatus


@dataclass(eq=False)
class _ActiveSession:
    session: SearchSession
    started_at: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    persist_failures: int = 0


class StreamOrchestrator:
    """Coordinates one streamed search per session.

    Flow:
      1. Record the session (INITIATED)
      2. Open the upstream thread (PROCESSING, or FAILED and re-raise)
      3. In the background: open the run stream and, per frame,
         classify -> sequence -> persist -> broadcast
      4. Finish as COMPLETED on natural end, FAILED on error or stop

    Every mutation of a session (emission step or terminal transition)
    happens under that session's lock.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        hub: BroadcastHub,
        store: SessionStore,
        *,
        max_consecutive_persist_failures: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.upstream = upstream
        self.hub = hub
        self.store = store
        if max_consecutive_persist_failures is None:
            max_consecutive_persist_failures = settings.max_consecutive_persist_failures
        # 0 and 1 both mean the first failed append fails the session
        self.max_consecutive_persist_failures = max(int(max_consecutive_persist_failures), 1)
        self._clock = clock
        self._sessions: dict[str, _ActiveSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # --- Start / stop ---

    async def start(
        self,
        owner_id: str,
        credential: str,
        query: str,
        context: dict[str, Any] | None = None,
        *,
        filters: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> StreamStartResult:
        """Create a session and open its upstream thread.

        Returns once the thread exists; consumption continues in the
        background. Failures up to that point are raised to the caller.
        """
        query = (query or "").strip()
        if not query:
            raise SearchValidationError("Search query is required")
        if not owner_id:
            raise SearchValidationError("User ID is required")
        if not credential:
            raise SearchValidationError("Authentication token is required")

        session = SearchSession(
            owner_id=owner_id,
            query=query,
            filters=filters,
            metadata=dict(context or {}),
        )
        await self.store.record_session(session)

        active = _ActiveSession(session=session, started_at=self._clock())
        self._sessions[session.id] = active
        log_service.log_stream_step(session.id, "initiated", "running", {"query": query[:100]})
        await self._signal(
            session.id,
            streaming.status(SessionStatus.INITIATED.value, "Creating upstream thread..."),
        )

        try:
            handle = await self.upstream.open_session(
                credential,
                {**session.metadata, "user_id": owner_id, "search_id": session.id, "query": query},
            )
        except Exception as e:
            logger.error(f"Failed to open upstream thread for search {session.id}: {e}")
            async with active.lock:
                await self._fail_locked(active, str(e), code=getattr(e, "code", "STREAM_ERROR"))
            raise

        async with active.lock:
            if session.status.is_terminal:
                return StreamStartResult(session.id, handle, query, session.status)
            session.upstream_handle = handle
            session.status = SessionStatus.PROCESSING
            await self._persist_status(
                session,
                {"threadId": handle, "startedAt": streaming.iso_timestamp()},
            )

        logger.info(f"Upstream thread {handle} created for search {session.id}")
        await self._signal(
            session.id,
            streaming.status(
                SessionStatus.PROCESSING.value,
                "Thread created, starting analysis...",
                threadId=handle,
            ),
        )

        run_options = options or {"configurable": {"user_id": owner_id}}
        task = asyncio.create_task(
            self._run(active, credential, run_options), name=f"search-stream-{session.id}"
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._tasks.pop(sid, None))

        return StreamStartResult(session.id, handle, query, session.status)

    async def stop(self, session_id: str) -> bool:
        """Cooperatively stop a running session; it finishes as FAILED."""
        active = self._sessions.get(session_id)
        if active is None:
            return False
        async with active.lock:
            if active.session.status.is_terminal:
                return False
            await self._fail_locked(active, STOPPED_MESSAGE)
        return True

    async def wait(self, session_id: str) -> None:
        """Wait until the background consumption of a session has ended."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Sessions whose loop was cancelled before it ever ran
        for active in list(self._sessions.values()):
            async with active.lock:
                await self._fail_locked(active, SHUTDOWN_MESSAGE, code="SHUTDOWN")
        logger.info(f"Stream orchestrator shut down ({len(tasks)} streams cancelled)")

    # --- Consumption loop ---

    async def _run(self, active: _ActiveSession, credential: str, options: dict[str, Any]) -> None:
        session = active.session
        frames = None
        try:
            frames = await self.upstream.open_stream(
                session.upstream_handle, credential, session.query, options
            )
            async for frame in frames:
                if session.status.is_terminal:
                    break
                await self._emit(active, frame)
                if session.status.is_terminal:
                    break
        except asyncio.CancelledError:
            async with active.lock:
                await self._fail_locked(active, SHUTDOWN_MESSAGE, code="SHUTDOWN")
            raise
        except Exception as e:
            logger.error(f"Upstream stream error for search {session.id}: {e!r}")
            async with active.lock:
                await self._fail_locked(active, str(e) or e.__class__.__name__)
        else:
            async with active.lock:
                await self._complete_locked(active)
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
            self._release(active)

    async def _emit(self, active: _ActiveSession, frame: Frame) -> None:
        event = classify(frame)
        if event is None:
            return

        session = active.session
        async with active.lock:
            if session.status.is_terminal:
                return

            if event.kind is EventKind.METADATA:
                # Informational only: not sequenced, not persisted
                await self.hub.broadcast(
                    session.id,
                    event.kind,
                    streaming.result_payload(event.kind, event.payload, None),
                )
                return

            sequence = session.sequence_counter + 1
            stream_event = StreamEvent(
                session_id=session.id,
                sequence=sequence,
                kind=event.kind,
                payload=event.payload,
                timestamp=utc_now(),
                owner_id=session.owner_id,
                upstream_handle=session.upstream_handle,
                metadata=event.metadata or {},
            )
            try:
                await self.store.append_event(stream_event)
            except Exception as e:
                active.persist_failures += 1
                log_service.log_db_operation(
                    "insert",
                    "search_results",
                    "failed",
                    details=f"{session.id}#{sequence}",
                    error=str(e),
                )
                if active.persist_failures >= self.max_consecutive_persist_failures:
                    raise PersistenceWriteError(
                        f"Persisting results failed {active.persist_failures} times in a row: {e}"
                    ) from e
                return

            active.persist_failures = 0
            session.sequence_counter = sequence
            logger.debug(
                f"Search {session.id} event #{sequence} {event.kind.value}: "
                f"{str(event.payload)[:100]}"
            )
            await self.hub.broadcast(
                session.id,
                event.kind,
                streaming.result_payload(
                    event.kind,
                    event.payload,
                    sequence,
                    metadata=event.metadata,
                    timestamp=stream_event.timestamp,
                ),
                sequence,
            )

    # --- Terminal transitions (caller holds the session lock) ---

    async def _complete_locked(self, active: _ActiveSession) -> None:
        session = active.session
        if session.status.is_terminal:
            return
        session.status = SessionStatus.COMPLETED
        duration_ms = int((self._clock() - active.started_at) * 1000)
        total = session.sequence_counter

        await self._persist_status(
            session,
            {
                "completedAt": streaming.iso_timestamp(),
                "totalResults": total,
                "durationMs": duration_ms,
            },
        )
        await self._signal(session.id, streaming.complete(session.id, total, duration_ms))
        log_service.log_stream_step(
            session.id, "complete", "completed", {"totalResults": total, "durationMs": duration_ms}
        )
        self._release(active)

    async def _fail_locked(
        self, active: _ActiveSession, message: str, code: str = "SEARCH_FAILED"
    ) -> None:
        session = active.session
        if session.status.is_terminal:
            return
        session.status = SessionStatus.FAILED

        await self._persist_status(
            session,
            {
                "error": message,
                "failedAt": streaming.iso_timestamp(),
                "totalResults": session.sequence_counter,
            },
        )
        await self._signal(session.id, streaming.error(message, code))
        log_service.log_stream_step(
            session.id, "failed", "failed", {"error": message, "code": code}
        )
        self._release(active)

    async def _persist_status(self, session: SearchSession, extra: dict[str, Any]) -> None:
        # Best-effort: a failed status write leaves the last stored status in place
        try:
            await self.store.update_session_status(session.id, session.status, extra)
        except Exception as e:
            log_service.log_db_operation(
                "update",
                "search_queries",
                "failed",
                details=f"{session.id} -> {session.status.value}",
                error=str(e),
            )

    def _release(self, active: _ActiveSession) -> None:
        if self._sessions.get(active.session.id) is active:
            del self._sessions[active.session.id]

    async def _signal(self, session_id: str, event: SSEEvent) -> int:
        return await self.hub.broadcast(session_id, event.event, event.data, event.id)

    # --- Listeners ---

    async def attach_listener(self, session_id: str, identity_id: str, transport: Transport) -> str:
        """Register a listener after checking it may see the session's events."""
        owner_id = await self.store.lookup_session_owner(session_id)
        if owner_id is None:
            raise SessionNotFound(session_id)
        if owner_id != identity_id:
            raise SessionAccessDenied(session_id)
        return await self.hub.attach(session_id, identity_id, transport)

    async def detach_listener(self, connection_id: str) -> bool:
        return await self.hub.detach(connection_id)

    # --- Introspection ---

    def is_active(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get_stats(self) -> dict[str, Any]:
        hub_stats = self.hub.get_stats()
        return {
            "active_sessions": len(self._sessions),
            "active_connections": hub_stats["total_connections"],
            "connections_per_session": hub_stats["connections_per_session"],
            "max_connections": hub_stats["max_connections"],
        }
