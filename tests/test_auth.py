"""Tests for bearer token verification."""
import json

import httpx
import pytest

from searchrelay.errors import AuthenticationError
from searchrelay.services.auth import extract_bearer_token, verify_credential


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc.def", "abc.def"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


@pytest.mark.asyncio
async def test_verify_credential_returns_identity():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"success": True, "valid": True, "user": {"id": 42, "email": "a@example.com"}},
        )

    identity = await verify_credential("tok", client=_client(handler))

    assert identity.id == "42"
    assert identity.email == "a@example.com"
    assert seen == {"path": "/auth/verify-token", "body": {"token": "tok"}}


@pytest.mark.asyncio
async def test_verify_credential_invalid_token():
    client = _client(lambda request: httpx.Response(200, json={"success": True, "valid": False}))

    with pytest.raises(AuthenticationError, match="Invalid token"):
        await verify_credential("tok", client=client)


@pytest.mark.asyncio
async def test_verify_credential_service_error():
    client = _client(lambda request: httpx.Response(503))

    with pytest.raises(AuthenticationError, match="unavailable"):
        await verify_credential("tok", client=client)


@pytest.mark.asyncio
async def test_verify_credential_service_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused")

    with pytest.raises(AuthenticationError, match="unavailable"):
        await verify_credential("tok", client=_client(handler))


@pytest.mark.asyncio
async def test_verify_credential_without_user_id():
    client = _client(lambda request: httpx.Response(200, json={"success": True, "valid": True, "user": {}}))

    with pytest.raises(AuthenticationError):
        await verify_credential("tok", client=client)


@pytest.mark.asyncio
async def test_verify_credential_requires_token():
    with pytest.raises(AuthenticationError):
        await verify_credential("")
