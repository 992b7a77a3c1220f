"""Exception types shared by the relay, bridge, device adapter, and task loop."""

from __future__ import annotations


class InvalidOrExpiredToken(Exception):
    """Token does not match the request, or the request is no longer pending."""

    def __init__(self, request_id: str, reason: str) -> None:
        super().__init__(f"Invalid or expired token for {request_id}: {reason}")
        self.request_id = request_id
        self.reason = reason


class RequestNotFound(KeyError):
    def __init__(self, request_id: str) -> None:
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self) -> str:
        return f"Request not found: {self.request_id}"


class InvalidArtifact(ValueError):
    """Delegation artifact failed validation before any state was written."""


class AdapterActionFailure(RuntimeError):
    """Raised when the execution target cannot apply an action."""


class DecisionPollFailure(RuntimeError):
    """Transport or HTTP failure while talking to the relay."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedModelOutput(ValueError):
    """Model output could not be parsed into an action payload."""


class ModelClientError(RuntimeError):
    """Model endpoint failed after all retries."""


class HumanAuthCancelled(Exception):
    """The task was stopped while waiting on a human decision."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Human authorization wait cancelled: {request_id}")
        self.request_id = request_id


class TunnelError(RuntimeError):
    """Tunnel process failed to start or to report a public URL."""
