"""Live listener registry and fan-out of session events."""
from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol
from uuid import uuid4

from loguru import logger

from searchrelay.config import settings
from searchrelay.errors import CapacityExceeded, DeliveryWriteError, RelayError
from searchrelay.models.events import EventKind, SignalType, SSEEvent, event_name
from searchrelay.services import streaming


class Transport(Protocol):
    """Sink a listener's serialized events are written to."""

    async def write(self, data: bytes) -> None: ...
    async def close(self) -> None: ...


def _connection_id() -> str:
    return f"conn_{uuid4().hex[:16]}"


@dataclass(eq=False)
class _Connection:
    session_id: str
    identity_id: str
    transport: Transport
    last_activity_at: float
    id: str = field(default_factory=_connection_id)
    connected: bool = True
    heartbeat_task: asyncio.Task | None = None
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, event: SSEEvent, now: float) -> bool:
        if not self.connected:
            return False
        try:
            async with self.write_lock:
                await self.transport.write(event.encode())
        except Exception as e:
            self.connected = False
            logger.warning(
                f"Listener write failed for {self.id} (search {self.session_id}): {e!r}"
            )
            return False
        self.last_activity_at = now
        return True


class BroadcastHub:
    """Owns every live listener connection, keyed by session and by identity.

    All registry mutation goes through the hub's own methods. Registration
    and removal update the indexes before any await, so a connection is
    either fully registered or fully gone from the point of view of any
    other task.
    """

    def __init__(
        self,
        *,
        max_connections: int | None = None,
        connection_timeout: float | None = None,
        heartbeat_interval: float | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_connections = max_connections if max_connections is not None else settings.max_connections
        self.connection_timeout = (
            connection_timeout if connection_timeout is not None else settings.connection_timeout_seconds
        )
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.heartbeat_interval_seconds
        )
        self.sweep_interval = sweep_interval if sweep_interval is not None else settings.sweep_interval_seconds
        self._clock = clock
        self._connections: dict[str, _Connection] = {}
        self._by_session: dict[str, set[str]] = {}
        self._by_identity: dict[str, set[str]] = {}
        self._sweeper: asyncio.Task | None = None
        self._closed = False

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the periodic stale-connection sweeper."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="listener-sweeper")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.sweep_stale(self.connection_timeout)

    async def shutdown(self) -> None:
        """Close every live connection with a best-effort notice."""
        logger.info("Shutting down broadcast hub...")
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        for conn in list(self._connections.values()):
            await self._remove(conn, notify=True)
        logger.info("Broadcast hub shutdown completed")

    # --- Registration ---

    async def attach(self, session_id: str, identity_id: str, transport: Transport) -> str:
        if self._closed:
            raise RelayError("Broadcast hub is shut down")
        total = len(self._connections)
        if total >= self.max_connections:
            raise CapacityExceeded(self.max_connections)

        conn = _Connection(
            session_id=session_id,
            identity_id=identity_id,
            transport=transport,
            last_activity_at=self._clock(),
        )
        self._connections[conn.id] = conn
        self._by_session.setdefault(session_id, set()).add(conn.id)
        self._by_identity.setdefault(identity_id, set()).add(conn.id)
        logger.info(
            f"Listener {conn.id} added for search {session_id}, identity {identity_id}. "
            f"Total connections: {total + 1}"
        )

        if not await conn.send(streaming.connected(session_id), self._clock()):
            await self._remove(conn, notify=False)
            raise DeliveryWriteError(f"Listener {conn.id} rejected the connected event")

        conn.heartbeat_task = asyncio.create_task(
            self._heartbeat(conn), name=f"heartbeat-{conn.id}"
        )
        return conn.id

    async def detach(self, connection_id: str) -> bool:
        """Remove a connection; a second call for the same id is a no-op."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        return await self._remove(conn, notify=False)

    async def _remove(self, conn: _Connection, *, notify: bool) -> bool:
        if self._connections.pop(conn.id, None) is None:
            return False

        self._discard(self._by_session, conn.session_id, conn.id)
        self._discard(self._by_identity, conn.identity_id, conn.id)

        task = conn.heartbeat_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        if notify and conn.connected:
            await conn.send(streaming.disconnect(), self._clock())
        conn.connected = False
        try:
            await conn.transport.close()
        except Exception as e:
            logger.debug(f"Closing transport of {conn.id} failed: {e!r}")

        logger.info(
            f"Listener {conn.id} removed for search {conn.session_id}, identity {conn.identity_id}. "
            f"Total connections: {len(self._connections)}"
        )
        return True

    @staticmethod
    def _discard(index: dict[str, set[str]], key: str, connection_id: str) -> None:
        ids = index.get(key)
        if ids is None:
            return
        ids.discard(connection_id)
        if not ids:
            del index[key]

    # --- Delivery ---

    async def broadcast(
        self,
        session_id: str,
        event_kind: EventKind | SignalType | str,
        payload: Any,
        sequence: int | None = None,
    ) -> int:
        """Write one event to every listener of a session.

        Returns the number of successful deliveries. Listeners whose write
        fails are removed without affecting the others.
        """
        targets = self._targets(self._by_session.get(session_id, ()))
        if not targets:
            logger.debug(f"No listeners for search {session_id}, event: {event_name(event_kind)}")
            return 0
        return await self._fan_out(targets, SSEEvent(event_kind, payload, sequence))

    async def broadcast_to_identity(
        self,
        identity_id: str,
        event_kind: EventKind | SignalType | str,
        payload: Any,
        sequence: int | None = None,
    ) -> int:
        targets = self._targets(self._by_identity.get(identity_id, ()))
        if not targets:
            return 0
        return await self._fan_out(targets, SSEEvent(event_kind, payload, sequence))

    def _targets(self, ids: Iterable[str]) -> list[_Connection]:
        return [self._connections[cid] for cid in list(ids) if cid in self._connections]

    async def _fan_out(self, targets: list[_Connection], event: SSEEvent) -> int:
        now = self._clock()
        results = await asyncio.gather(*(conn.send(event, now) for conn in targets))
        failed = [conn for conn, ok in zip(targets, results) if not ok]
        for conn in failed:
            await self._remove(conn, notify=False)

        delivered = len(targets) - len(failed)
        logger.debug(
            f"Broadcast {event_name(event.event)} completed: {delivered}/{len(targets)} successful"
        )
        return delivered

    async def _heartbeat(self, conn: _Connection) -> None:
        while conn.connected:
            await asyncio.sleep(self.heartbeat_interval)
            if not conn.connected:
                break
            if not await conn.send(streaming.heartbeat(), self._clock()):
                await self._remove(conn, notify=False)
                break

    async def sweep_stale(self, max_idle: float | None = None) -> int:
        """Remove connections idle for longer than max_idle seconds."""
        max_idle = self.connection_timeout if max_idle is None else max_idle
        now = self._clock()
        stale = [
            conn for conn in self._connections.values()
            if now - conn.last_activity_at > max_idle
        ]
        for conn in stale:
            logger.info(f"Cleaning up stale listener connection: {conn.id}")
            await self._remove(conn, notify=True)
        if stale:
            logger.info(f"Cleaned up {len(stale)} stale listener connections")
        return len(stale)

    # --- Introspection ---

    @property
    def total_connections(self) -> int:
        return len(self._connections)

    def session_connection_count(self, session_id: str) -> int:
        return len(self._by_session.get(session_id, ()))

    def identity_connection_count(self, identity_id: str) -> int:
        return len(self._by_identity.get(identity_id, ()))

    def has_connection(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "session_count": len(self._by_session),
            "identity_count": len(self._by_identity),
            "connections_per_session": {
                session_id: len(ids) for session_id, ids in self._by_session.items()
            },
            "max_connections": self.max_connections,
            "connection_timeout": self.connection_timeout,
        }
