"""Error taxonomy shared by the source adapters, reconciler and scheduling flow.

Propagation rules:

- ``TransientSourceError`` is never retried inside a pass; the next tick retries.
- ``AuthenticationError`` triggers the single refresh-and-retry of
  :class:`questline.credentials.CredentialRefreshGuard`.
- ``DataConflictError`` and ``ValidationError`` skip one record (or sub-record).
- ``PersistenceError`` aborts one event's transaction.
- ``FlowNotFoundError`` and ``FlowError`` are surfaced to the waiting user.
"""

from __future__ import annotations


class QuestlineError(RuntimeError):
    """Base error for the reconciliation engine."""


class TransientSourceError(QuestlineError):
    """Raised on network failures, 5xx responses or malformed payloads from a source."""

    def __init__(self, source: str, message: str, *, status_code: int | None = None) -> None:
        self.source = source
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"{source} request failed: {message}")
        else:
            super().__init__(f"{source} request failed ({status_code}): {message}")


class AuthenticationError(QuestlineError):
    """Raised when a source rejects the presented credentials."""

    def __init__(self, source: str, message: str = "authentication failed") -> None:
        self.source = source
        super().__init__(f"{source}: {message}")


class TokenRefreshError(QuestlineError):
    """Raised when an OAuth2 refresh-token exchange fails."""


class SourceUnavailableError(QuestlineError):
    """Raised when a source adapter is not configured or has no usable client."""


class DataConflictError(QuestlineError):
    """Raised when an incoming record contradicts an already recorded series link."""


class ValidationError(QuestlineError, ValueError):
    """Raised when an external identifier or form value is malformed."""


class PersistenceError(QuestlineError):
    """Raised when a reconciliation transaction fails and is rolled back."""


class FlowNotFoundError(QuestlineError):
    """Raised when a schedule-session flow token is unknown or has expired."""

    def __init__(self, flow_id: int) -> None:
        self.flow_id = flow_id
        super().__init__(f"Schedule session flow {flow_id} not found or expired")


class FlowError(QuestlineError):
    """Raised when a schedule-session flow cannot be completed.

    The message is shown to the user verbatim.
    """


class FlowInProgressError(FlowError):
    """Raised when another submission of the same flow is still running."""

    def __init__(self, flow_id: int) -> None:
        self.flow_id = flow_id
        super().__init__("This session is already being scheduled, please wait a moment")
