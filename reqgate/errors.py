from __future__ import annotations


class GovernanceError(Exception):
    """Base class for everything the request gate raises on purpose."""

    status_code: int = 500


class PolicyRejection(GovernanceError):
    """The call was refused before any attempt was made.

    Never counted as evidence that the remote service is unhealthy.
    """


class RateLimited(PolicyRejection):
    status_code = 429

    def __init__(self, domain: str, remaining_minutes: int):
        self.domain = domain
        self.remaining_minutes = remaining_minutes
        super().__init__(
            f"Domain '{domain}' is rate limited. Try again in {remaining_minutes} minutes."
        )


class CircuitOpen(PolicyRejection):
    status_code = 503

    def __init__(self, domain: str, remaining_seconds: int = 0):
        self.domain = domain
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit breaker is OPEN for domain '{domain}'. Retry in {remaining_seconds} second(s)."
        )


class TransportFailure(GovernanceError):
    """The call was attempted and failed below HTTP (connect, timeout, protocol)."""

    status_code = 502

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnsupportedMethod(GovernanceError, ValueError):
    status_code = 405

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Invalid HTTP method: {method}")
