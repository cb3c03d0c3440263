"""
Error taxonomy of the account security core.

Every error a caller can trigger carries the HTTP status it maps to and a
``next_step`` hint, so the client can always tell the user what to do
instead of a bare "denied". The Flask error handler in ``app.py`` turns
them into JSON responses.
"""


class SecurityCoreError(Exception):
    status_code = 500
    error = "Internal error"
    next_step = None

    def __init__(self, message=None, next_step=None, **extra):
        super().__init__(message or self.error)
        self.message = message or self.error
        if next_step is not None:
            self.next_step = next_step
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.error, "message": self.message, "next_step": self.next_step}
        body.update(self.extra)
        return body


class ValidationError(SecurityCoreError):
    """Malformed input. Never recorded as a security event."""
    status_code = 400
    error = "Invalid request"
    next_step = "Fix the request and try again."


class AuthenticationError(SecurityCoreError):
    status_code = 401
    error = "Invalid credentials"
    next_step = (
        "Check your email and password and try again. "
        "Repeated failures temporarily lock the account."
    )


class LockedError(SecurityCoreError):
    status_code = 423
    error = "Account temporarily locked"

    def __init__(self, locked_until, retry_after_seconds: int):
        super().__init__(
            "Too many failed sign-in attempts.",
            next_step=f"Wait {_humanize(retry_after_seconds)} before signing in again.",
            locked_until=locked_until.isoformat(),
            retry_after_seconds=retry_after_seconds,
        )
        self.locked_until = locked_until
        self.retry_after_seconds = retry_after_seconds


class NotFoundError(SecurityCoreError):
    status_code = 404
    error = "Not found"
    next_step = "Sign in again to start a new request."


class ExpiredError(SecurityCoreError):
    status_code = 410
    error = "Confirmation expired"
    next_step = "The confirmation window has closed. Sign in again to get a new one."


class PolicyViolation(SecurityCoreError):
    """
    A hard delete would break the retention floor. Raised by the retention
    policy and always downgraded to anonymization by the compliance engine.
    """
    status_code = 409
    error = "Retention policy violation"


class EventLogWriteError(SecurityCoreError):
    """The security event stream could not be written. Always fatal."""
    status_code = 500
    error = "Security event log unavailable"
    next_step = "Try again later."


def _humanize(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconds"
    minutes = (seconds + 59) // 60
    return f"{minutes} minute" + ("s" if minutes != 1 else "")
