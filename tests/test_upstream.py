"""Tests for the upstream agent client, using httpx.MockTransport."""
import json

import httpx
import pytest

from searchrelay.errors import UpstreamRejected, UpstreamUnavailable
from searchrelay.services.upstream import STREAM_MODES, UpstreamSessionClient


class BrokenStream(httpx.AsyncByteStream):
    """Yields one frame, then the connection drops."""

    async def __aiter__(self):
        yield b'event: values\ndata: {"final_result": "partial"}\n\n'
        raise httpx.ReadError("connection reset")

    async def aclose(self) -> None:
        pass


def _client(handler) -> UpstreamSessionClient:
    return UpstreamSessionClient(
        "http://upstream.test/",
        assistant_id="test-agent",
        origin="http://frontend.test",
        recursion_limit=25,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_open_session_returns_thread_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"thread_id": "thread-42"})

    client = _client(handler)
    handle = await client.open_session("tok", {"search_id": "s1"})

    assert handle == "thread-42"
    assert seen["url"] == "http://upstream.test/threads"
    assert seen["headers"]["authorization"] == "Bearer tok"
    assert seen["headers"]["origin"] == "http://frontend.test"
    assert seen["body"] == {"metadata": {"search_id": "s1"}}


@pytest.mark.asyncio
async def test_open_session_rejected_status():
    client = _client(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(UpstreamRejected) as exc:
        await client.open_session("tok")

    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_open_session_without_thread_id_is_rejected():
    client = _client(lambda request: httpx.Response(200, json={"status": "idle"}))

    with pytest.raises(UpstreamRejected):
        await client.open_session("tok")


@pytest.mark.asyncio
async def test_open_session_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    client = _client(handler)

    with pytest.raises(UpstreamUnavailable):
        await client.open_session("tok")


@pytest.mark.asyncio
async def test_open_stream_sends_run_request_and_yields_frames():
    seen = {}
    body = (
        b'event: metadata\ndata: {"run_id": "r1"}\nid: 1\n\n'
        b'event: values\ndata: {"messages": [{"content": "thinking"}]}\nid: 2\n\n'
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    client = _client(handler)
    stream = await client.open_stream(
        "thread-42", "tok", "solar trends", {"configurable": {"user_id": "u1"}}
    )
    frames = [frame async for frame in stream]

    assert [f.event for f in frames] == ["metadata", "values"]
    assert frames[0].id == "1"

    assert seen["url"] == "http://upstream.test/threads/thread-42/runs/stream"
    assert seen["headers"]["cache-control"] == "no-cache"
    run = seen["body"]
    assert run["assistant_id"] == "test-agent"
    assert run["stream_mode"] == STREAM_MODES
    assert run["on_disconnect"] == "cancel"
    assert run["stream_resumable"] is False
    message = run["input"]["messages"][0]
    assert message["type"] == "human"
    assert message["content"] == "solar trends"
    assert message["id"].startswith("msg_")
    assert run["config"]["recursion_limit"] == 25
    assert run["config"]["configurable"]["user_id"] == "u1"
    assert run["config"]["configurable"]["deepResearch"] is True
    assert run["config"]["configurable"]["file_server"] == "http://frontend.test"


@pytest.mark.asyncio
async def test_open_stream_rejected_status():
    client = _client(lambda request: httpx.Response(422, json={"detail": "bad"}))

    with pytest.raises(UpstreamRejected) as exc:
        await client.open_stream("thread-42", "tok", "q")

    assert exc.value.status_code == 422


@pytest.mark.asyncio
async def test_interrupted_stream_raises_unavailable_after_delivered_frames():
    client = _client(lambda request: httpx.Response(200, stream=BrokenStream()))
    stream = await client.open_stream("thread-42", "tok", "q")
    received = []

    with pytest.raises(UpstreamUnavailable):
        async for frame in stream:
            received.append(frame)

    assert [f.data for f in received] == [{"final_result": "partial"}]


def test_run_config_keeps_defaults_for_missing_keys():
    client = _client(lambda request: httpx.Response(200))

    config = client.build_run_config({"configurable": {"project_id": "p1"}, "tags": ["x"]})

    assert config["tags"] == ["x"]
    assert config["configurable"]["project_id"] == "p1"
    assert config["configurable"]["mcpWebSearch"] is True
    assert config["configurable"]["user_id"] == ""
