from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised by the search relay."""


class SearchValidationError(RelayError):
    pass


class AuthenticationError(RelayError):
    pass


class SessionNotFound(RelayError):
    def __init__(self, session_id: str):
        super().__init__(f"Search not found: {session_id}")
        self.session_id = session_id


class SessionAccessDenied(RelayError):
    def __init__(self, session_id: str):
        super().__init__(f"Access denied to search: {session_id}")
        self.session_id = session_id


class UpstreamError(RelayError):
    code = "UPSTREAM_ERROR"


class UpstreamUnavailable(UpstreamError):
    """The upstream service could not be reached or the transport broke."""


class UpstreamRejected(UpstreamError):
    """The upstream service answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FrameDecodeError(RelayError):
    pass


class PersistenceWriteError(RelayError):
    pass


class DeliveryWriteError(RelayError):
    pass


class CapacityExceeded(RelayError):
    def __init__(self, limit: int):
        super().__init__(f"Maximum listener connections exceeded ({limit})")
        self.limit = limit
