"""Error taxonomy for backend, telephony and session operations.

These exceptions are safe to import from API layers without pulling in any client code.
"""

from __future__ import annotations


class BridgeError(Exception):
    status_code: int = 500
    default_detail: str = "Call bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class TransportFailureError(BridgeError):
    status_code = 503
    default_detail = "Network request failed."


class AuthFailureError(BridgeError):
    status_code = 401
    default_detail = "Credentials were rejected."


class ApplicationFailureError(BridgeError):
    status_code = 502
    default_detail = "Remote service returned an error."

    def __init__(self, detail: str | None = None, *, status: int | None = None, body: str = "") -> None:
        if detail is None:
            detail = f"Remote service returned status {status}"
            if body:
                detail = f"{detail}: {body}"
        super().__init__(detail)
        self.status = status
        self.body = body


class CircuitOpenError(BridgeError):
    status_code = 503
    default_detail = "Circuit breaker is open."


class RetryExhaustedError(BridgeError):
    status_code = 503
    default_detail = "Retries exhausted."

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"Retries exhausted after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class SessionNotFoundError(BridgeError):
    status_code = 404
    default_detail = "Session not found."


class ConversationConflictError(BridgeError):
    status_code = 409
    default_detail = "Conversation is already bound to another session."


class InvalidTransitionError(BridgeError):
    status_code = 409
    default_detail = "Invalid generation state transition."
