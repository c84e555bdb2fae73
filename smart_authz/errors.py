"""
Error taxonomy for authorization decisions.

There are exactly two kinds of failure:

- **UnauthorizedError**: the caller is denied. Raised for every token
  verification failure, insufficient scope, malformed identity and negative
  access decision. The public message is deliberately opaque; the specific
  cause travels in ``reason`` and is only written to the log.
- **ConfigurationError**: the engine was set up wrong by an operator (version
  mismatch, no verification mode, unsupported FHIR version). Carries a
  descriptive message because it is not driven by attacker-controlled input.
"""

INVALID_TOKEN_MESSAGE = "Invalid access token"
UNAUTHORIZED_MESSAGE = "Unauthorized"


class AuthError(Exception):
    """
    Base class for denials surfaced to the caller.

    Attributes:
        message: Public, opaque error description
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(AuthError):
    """
    The single denial kind.

    Attributes:
        reason: Internal cause of the denial (logged server-side, never returned)
    """

    def __init__(self, reason: str = "", message: str = UNAUTHORIZED_MESSAGE):
        self.reason = reason
        super().__init__(message, status_code=401)


class ConfigurationError(Exception):
    """Raised when the engine is constructed or invoked with an invalid setup."""
