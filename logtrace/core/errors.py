"""Exception types shared by services and routes.

``ApiError`` subclasses are rendered by the application's exception handler as
``{"detail": message, "code": code}`` with their status code. ``DecodeError``
is a file-level failure raised while reading an upload and is handled by the
ingestion job, never by HTTP.
"""


class ApiError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class InvalidTimeRange(ApiError):
    code = "INVALID_TIME_RANGE"


class InvalidCursor(ApiError):
    code = "INVALID_CURSOR"


class BatchTooLarge(ApiError):
    code = "BATCH_TOO_LARGE"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class DecodeError(Exception):
    """The buffer carries the container signature but cannot be decrypted."""

    def __init__(self, message: str, blocks_total: int = 0, blocks_failed: int = 0):
        super().__init__(message)
        self.blocks_total = blocks_total
        self.blocks_failed = blocks_failed
