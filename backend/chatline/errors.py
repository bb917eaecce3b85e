"""Error taxonomy shared by the chat core.

Every error raised across a component boundary derives from ChatError so the
WebSocket dispatch loop and the HTTP routers can turn it into a reply for the
originating client without crashing the shared connection handling.
"""


class ChatError(Exception):
    """Base class for chat core errors."""


class AuthError(ChatError):
    """Missing, invalid or expired bearer token."""


class ValidationError(ChatError):
    """Request rejected before anything was persisted.

    Attributes:
        status_code: HTTP status used when surfaced over HTTP.
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ChatError):
    """Unknown blob (or other addressed resource)."""


class PersistenceError(ChatError):
    """Backing store unavailable or failed the write/read."""


class TransportError(ChatError):
    """Delivery to a single connection failed (peer gone)."""
