"""
Exception types for the stream recorder daemon.
"""


class AppError(Exception):
    """Base error with a short machine-readable code."""

    code = "APP_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(AppError):
    """A target or other record does not exist."""
    code = "NOT_FOUND"


class ValidationError(AppError, ValueError):
    """Invalid user input or configuration value."""
    code = "VALIDATION_ERROR"


class ToolUnavailableError(AppError):
    """An external binary (streamlink, ffmpeg) cannot be executed."""
    code = "TOOL_UNAVAILABLE"


class DaemonLockedError(AppError):
    """Another live daemon holds the lock for this state directory."""
    code = "DAEMON_LOCKED"


class DaemonRequestError(AppError):
    """A control-plane request returned a non-success status."""
    code = "DAEMON_REQUEST_FAILED"

    def __init__(self, status: int, body: str):
        super().__init__(f"Daemon request failed: {status} {body}".strip())
        self.status = status
        self.body = body
