"""
Error taxonomy shared by the matching core.

Every error carries a human readable message, a machine checkable ``kind`` and
the status class a transport layer should map it to. Business-rule failures are
client errors; only storage failures are server errors.
"""

CLIENT_ERROR = "client-error"
SERVER_ERROR = "server-error"


class ServiceError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_class(self) -> str:
        return SERVER_ERROR if self.status_code >= 500 else CLIENT_ERROR

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind, **self.details}


class NotFound(ServiceError):
    kind = "not_found"
    status_code = 404


class Conflict(ServiceError):
    kind = "conflict"
    status_code = 409


class Ineligible(ServiceError):
    kind = "ineligible"
    status_code = 422

    def __init__(self, message: str, days_remaining: int, **details):
        super().__init__(message, daysRemaining=days_remaining, **details)
        self.days_remaining = days_remaining


class ValidationFailed(ServiceError):
    kind = "validation"
    status_code = 400


class StorageError(ServiceError):
    kind = "storage"
    status_code = 503

    def __init__(self, message: str, retryable: bool = False, **details):
        super().__init__(message, retryable=retryable, **details)
        self.retryable = retryable


class StaleWriteError(StorageError):
    """The document changed between read and write."""

    kind = "stale_write"

    def __init__(self, message: str, **details):
        super().__init__(message, retryable=True, **details)


class PartialMatchError(StorageError):
    """Donor side of a match is committed but the requester side is not."""

    kind = "partial_match"
    status_code = 500

    def __init__(self, message: str, **details):
        super().__init__(message, retryable=False, **details)
