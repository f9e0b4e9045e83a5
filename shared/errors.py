from __future__ import annotations


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = str(message or self.default_message)
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(AppError):
    status_code = 401
    default_message = "Unauthorized"


class InvalidOrExpiredToken(Unauthorized):
    default_message = "Invalid or expired token"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class RateLimited(AppError):
    status_code = 429
    default_message = "Too many attempts. Please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int = 3600):
        super().__init__(message)
        self.retry_after = int(retry_after)


class MailerError(AppError):
    """Raised by the mailer; callers decide whether it is fatal."""

    status_code = 502
    default_message = "Mail transport failed"
