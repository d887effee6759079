"""Error taxonomy shared by services and routes.

Every error carries the HTTP status it maps to and an optional list of
itemized reasons; main.py renders them as {"error": ..., "details": [...]}.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(AppError):
    """Batch or request rejected before any I/O."""
    status_code = 400


class QuotaExceeded(AppError):
    """Batch would push the user past storage_limit."""
    status_code = 413

    def __init__(self, attempted: int, available: int):
        super().__init__(
            "Storage limit exceeded",
            [f"Total size: {attempted} bytes", f"Available: {available} bytes"],
        )
        self.attempted = attempted
        self.available = available


class ScanBlocked(AppError):
    """Per-file: content scanner flagged the file. Never raised past the orchestrator."""
    status_code = 422


class ProcessingError(AppError):
    """Per-file: media processing or storage write failed."""
    status_code = 500


class NotFound(AppError):
    status_code = 404


class Forbidden(AppError):
    status_code = 403


class Unauthorized(AppError):
    status_code = 401


class Expired(AppError):
    status_code = 410


class Conflict(AppError):
    status_code = 409


class InternalFault(AppError):
    status_code = 500
