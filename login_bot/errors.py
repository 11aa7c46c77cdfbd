"""
Error taxonomy for the login bot.
Each error carries the HTTP status and OAuth-style error code it maps to; the description
sent to callers is generic, details stay in the logs.
"""


class LoginBotError(Exception):
    """Base exception for all login bot errors."""

    status_code = 500
    error = "server_error"
    description = "Something went wrong"


class ClientMismatch(LoginBotError):
    """Unknown client_id, redirect_uri or client secret."""

    status_code = 401
    error = "invalid_client"
    description = "Invalid client credentials"


class NotReady(LoginBotError):
    """Operation attempted before the session has a verification channel."""

    status_code = 400
    error = "not_ready"
    description = "You need to start the login process first, via /requestQr"


class NotVerified(LoginBotError):
    """Code requested for a session that has not bound an identity."""

    status_code = 400
    error = "not_verified"
    description = "Session is not verified yet"


class SessionExpired(LoginBotError):
    status_code = 401
    error = "session_expired"
    description = "Session expired, start the login process again"


class InvalidGrant(LoginBotError):
    """Authorization code absent, expired or already consumed."""

    status_code = 400
    error = "invalid_grant"
    description = "Invalid or expired authorization code"


class InvariantViolation(LoginBotError):
    """The platform reported a state that must never happen (e.g. 3 channel members)."""

    status_code = 500
    error = "server_error"


class StoreUnavailable(LoginBotError):
    """Code store or messaging platform I/O failed."""

    status_code = 503
    error = "temporarily_unavailable"
    description = "Service temporarily unavailable"


class RateLimited(LoginBotError):
    status_code = 429
    error = "slow_down"
    description = "Too many requests"

    def __init__(self, retry_after: int):
        super().__init__(f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after
