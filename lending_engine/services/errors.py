from __future__ import annotations


class LendingError(RuntimeError):
    """Base for every failure the lending engine reports to its callers."""

    status_code = 400
    code = "lending_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(LendingError):
    status_code = 404
    code = "not_found"


class Blacklisted(LendingError):
    status_code = 403
    code = "blacklisted"


class InsufficientAvailability(LendingError):
    status_code = 409
    code = "insufficient_availability"


class Conflict(LendingError):
    status_code = 409
    code = "conflict"


class AlreadyExists(Conflict):
    code = "already_exists"


class ValidationError(LendingError):
    status_code = 400
    code = "validation_error"


class Forbidden(LendingError):
    status_code = 403
    code = "forbidden"
