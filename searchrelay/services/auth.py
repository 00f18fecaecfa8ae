from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from searchrelay.config import settings
from searchrelay.errors import AuthenticationError


@dataclass(frozen=True)
class Identity:
    id: str
    email: str | None = None
    user: dict[str, Any] = field(default_factory=dict)


def extract_bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def verify_credential(token: str, *, client: httpx.AsyncClient | None = None) -> Identity:
    """Verify a bearer token with the auth service and return the caller's identity."""
    if not token:
        raise AuthenticationError("No token provided")

    url = f"{settings.auth_service_url.rstrip('/')}/auth/verify-token"
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.auth_timeout)
    try:
        response = await client.post(
            url,
            json={"token": token},
            headers={"Accept": "application/json"},
        )
    except httpx.TransportError as e:
        logger.error(f"Auth service unreachable: {e}")
        raise AuthenticationError("Authentication service unavailable") from e
    finally:
        if owns_client:
            await client.aclose()

    if not response.is_success:
        logger.warning(f"Auth service returned {response.status_code}")
        raise AuthenticationError("Authentication service unavailable")

    try:
        result = response.json()
    except ValueError as e:
        raise AuthenticationError("Authentication service returned invalid JSON") from e

    if not isinstance(result, dict) or not result.get("success") or not result.get("valid"):
        message = result.get("error") if isinstance(result, dict) else None
        raise AuthenticationError(message or "Invalid token")

    user = result.get("user")
    if not isinstance(user, dict):
        user = {}
    user_id = user.get("id") or user.get("userId")
    if not user_id:
        raise AuthenticationError("Token verified without a user id")
    return Identity(id=str(user_id), email=user.get("email"), user=user)
