"""Typed failures surfaced by the proxy and their HTTP mapping."""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for every failure the HTTP boundary knows how to render.

    ``message`` is safe to show to the browser. ``cause`` carries the
    underlying exception for server-side logs only.
    """

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class InvalidInputError(ProxyError):
    """The caller sent something unusable. Never retried."""

    kind = "invalid_input"
    status_code = 400


class NotFoundError(ProxyError):
    """The thread or agent does not exist upstream."""

    kind = "not_found"
    status_code = 404


class ConflictError(ProxyError):
    """Another turn is already in flight for the same thread."""

    kind = "conflict"
    status_code = 409


class UpstreamConnectionError(ProxyError):
    """Transient I/O failure talking to the agent service."""

    kind = "connection_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, cause)
        self.upstream_status = status_code


class UpstreamAuthError(UpstreamConnectionError):
    """The agent service rejected our credentials (401/403)."""


class RunFailedError(ProxyError):
    """The agent service reported that the run failed."""

    kind = "run_failed"
    status_code = 502

    def __init__(self, detail: str, code: str | None = None, run_id: str | None = None):
        super().__init__(f"Agent run failed: {detail}")
        self.detail = detail
        self.code = code
        self.run_id = run_id


class RunTimeoutError(ProxyError):
    """The run did not reach a terminal status before the deadline."""

    kind = "timeout"
    status_code = 504

    def __init__(self, message: str, run_id: str | None = None):
        super().__init__(message)
        self.run_id = run_id


class TurnCancelledError(ProxyError):
    """The turn was abandoned because the client left or the server is stopping."""

    kind = "cancelled"
    status_code = 503
