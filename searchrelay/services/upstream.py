"""Client for the upstream agent service: threads and streamed runs."""
from __future__ import annotations

from typing import Any, AsyncIterator
from uuid import uuid4

import httpx
from loguru import logger

from searchrelay.config import settings
from searchrelay.errors import UpstreamRejected, UpstreamUnavailable
from searchrelay.models.events import Frame
from searchrelay.services.frames import decode_frames

STREAM_MODES = ["values", "messages-tuple", "custom"]


class FrameStream:
    """Lazy, single-use sequence of frames read from one streamed run."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Frame]:
        return self._frames()

    async def _chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Upstream stream interrupted: {e}") from e

    async def _frames(self) -> AsyncIterator[Frame]:
        try:
            async for frame in decode_frames(self._chunks()):
                yield frame
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


class UpstreamSessionClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        assistant_id: str | None = None,
        origin: str | None = None,
        recursion_limit: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.upstream_base_url).rstrip("/")
        self.assistant_id = assistant_id or settings.upstream_assistant_id
        self.origin = origin or settings.frontend_url
        self.recursion_limit = recursion_limit or settings.upstream_recursion_limit
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.upstream_read_timeout,
                connect=settings.upstream_connect_timeout,
            )
        )

    def _headers(self, credential: str, **extra: str) -> dict[str, str]:
        return {
            "Accept": "*/*",
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Origin": self.origin,
            **extra,
        }

    async def open_session(self, credential: str, context: dict[str, Any] | None = None) -> str:
        """Create an upstream thread and return its id."""
        try:
            response = await self._client.post(
                f"{self.base_url}/threads",
                json={"metadata": context or {}},
                headers=self._headers(credential),
            )
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Failed to create upstream thread: {e}") from e

        if not response.is_success:
            raise UpstreamRejected(
                f"Upstream threads API failed: {response.status_code} {response.reason_phrase}",
                response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        thread_id = payload.get("thread_id") if isinstance(payload, dict) else None
        if not thread_id:
            raise UpstreamRejected(
                "Upstream threads API did not return thread_id", response.status_code
            )
        return str(thread_id)

    def build_run_config(self, options: dict[str, Any] | None = None) -> dict[str, Any]:
        options = options or {}
        default_configurable = {
            "deepResearch": True,
            "mcpWebSearch": True,
            "user_id": "",
            "project_id": "",
            "file_server": self.origin,
            "dir_id": None,
            "type": "",
        }
        return {
            "recursion_limit": self.recursion_limit,
            **options,
            "configurable": {
                **default_configurable,
                **(options.get("configurable") or {}),
            },
        }

    def build_run_request(self, query: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        return {
            "input": {
                "messages": [
                    {
                        "id": f"msg_{uuid4().hex[:12]}",
                        "type": "human",
                        "content": query,
                    }
                ]
            },
            "config": self.build_run_config(options),
            "stream_mode": STREAM_MODES,
            "stream_resumable": False,
            "assistant_id": self.assistant_id,
            "on_disconnect": "cancel",
        }

    async def open_stream(
        self,
        upstream_handle: str,
        credential: str,
        query: str,
        options: dict[str, Any] | None = None,
    ) -> FrameStream:
        """Start a streamed run on the thread; the status is checked before returning."""
        request = self._client.build_request(
            "POST",
            f"{self.base_url}/threads/{upstream_handle}/runs/stream",
            json=self.build_run_request(query, options),
            headers=self._headers(credential, **{"Cache-Control": "no-cache"}),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Failed to start upstream stream: {e}") from e

        if not response.is_success:
            await response.aclose()
            raise UpstreamRejected(
                f"Upstream stream API failed: {response.status_code} {response.reason_phrase}",
                response.status_code,
            )

        logger.debug(f"Upstream stream opened for thread {upstream_handle}")
        return FrameStream(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
