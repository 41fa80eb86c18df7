"""Exception hierarchy for the companion-communication layer.

All docbridge exceptions inherit from ``DocbridgeError`` so callers that
do want to catch everything can use a single ``except DocbridgeError``.

Transport-level failures (``TransportTimeout``, ``NetworkFailure``,
``ProtocolError``, ``MalformedResponse``) are raised by
:mod:`docbridge.transport` and converted into result/state objects by the
clients.  Only programmer errors (``UserInputError``,
``InvalidSyncTransition``) escape the public client APIs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from docbridge.models import SyncProgress
    from docbridge.sync_state import SyncStatus


class DocbridgeError(Exception):
    """Base exception for all docbridge failures."""

    __slots__ = ()


# ── Transport failures ───────────────────────────────────────────


class TransportTimeout(DocbridgeError):
    """Raised when the abort scope fires before a response arrives.

    Attributes
    ----------
    url : str
        Target of the cancelled call.
    timeout_ms : int
        The bound that expired.
    """

    __slots__ = ("timeout_ms", "url")

    def __init__(self, url: str, timeout_ms: int) -> None:
        super().__init__(f"Request to {url} timed out after {timeout_ms}ms")
        self.url = url
        self.timeout_ms = timeout_ms


class NetworkFailure(DocbridgeError):
    """Raised when the connection is refused, reset or otherwise lost."""

    __slots__ = ("detail", "url")

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"Network failure contacting {url}: {detail}")
        self.url = url
        self.detail = detail


class ProtocolError(DocbridgeError):
    """Raised for a non-2xx response.

    Attributes
    ----------
    status_code : int
        HTTP status of the response.
    message : str
        Best human-readable message extracted from the body.
    body : Any
        Parsed JSON body when available, otherwise ``None``.
    """

    __slots__ = ("body", "message", "status_code")

    def __init__(self, status_code: int, message: str, body: Any = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.body = body


class MalformedResponse(DocbridgeError):
    """Raised when a response body cannot be parsed.

    Logged and treated as a generic failure; never fatal.
    """

    __slots__ = ("detail",)

    def __init__(self, detail: str) -> None:
        super().__init__(f"Malformed response: {detail}")
        self.detail = detail


# ── Application-level conditions ─────────────────────────────────


class SyncConflict(DocbridgeError):
    """A sync job is already running server-side (HTTP 409).

    Recoverable by attaching to the running job's stream; carries the
    server's ``currentProgress`` snapshot.
    """

    __slots__ = ("progress",)

    def __init__(self, progress: SyncProgress) -> None:
        super().__init__("Sync already in progress")
        self.progress = progress


class UserInputError(DocbridgeError):
    """Raised when user-supplied input is rejected before any network call."""

    __slots__ = ("field", "value")

    def __init__(self, field: str, value: str, detail: str) -> None:
        super().__init__(f"Invalid {field} {value!r}: {detail}")
        self.field = field
        self.value = value


class InvalidSyncTransition(DocbridgeError):
    """Raised when a sync status change is not in the transition table."""

    __slots__ = ("from_status", "to_status", "valid")

    def __init__(
        self,
        from_status: SyncStatus,
        to_status: SyncStatus,
        valid: list[str],
    ) -> None:
        super().__init__(
            f"Invalid sync transition {from_status.value!r} → "
            f"{to_status.value!r}.  Valid successors: {valid}"
        )
        self.from_status = from_status
        self.to_status = to_status
        self.valid = valid
