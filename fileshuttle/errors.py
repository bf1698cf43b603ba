class FileShuttleError(Exception):
    """Base class for failures that map onto an HTTP status code."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(FileShuttleError):
    """A required parameter is missing or malformed."""

    status_code = 400


class PathOutsideRootError(InvalidRequestError):
    """A client-supplied path resolves outside the shared root."""

    def __init__(self, requested: str) -> None:
        super().__init__("Path escapes the shared root")
        self.requested = requested


class NotFoundError(FileShuttleError):
    status_code = 404


class UploadConflictError(FileShuttleError):
    """A chunk arrived for an offset other than the committed one."""

    status_code = 409

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Offset mismatch: expected {expected}, got {received}")
        self.expected = expected
        self.received = received


class InternalError(FileShuttleError):
    status_code = 500
