from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Query, Request

from searchrelay.errors import AuthenticationError
from searchrelay.services.auth import Identity, extract_bearer_token, verify_credential
from searchrelay.services.orchestrator import StreamOrchestrator
from searchrelay.services.session_store import SessionStore


def get_orchestrator(request: Request) -> StreamOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_token(
    authorization: str | None = Header(default=None),
    token: str | None = Query(default=None),
) -> str:
    """Bearer token from the header, or from `?token=` for EventSource clients."""
    credential = extract_bearer_token(authorization) or token
    if not credential:
        raise HTTPException(status_code=401, detail="No token provided")
    return credential


async def get_identity(credential: str = Depends(get_token)) -> Identity:
    try:
        return await verify_credential(credential)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
