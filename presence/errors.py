from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

GUARD_NON_WORKING_DAY = "NON_WORKING_DAY"
GUARD_ALREADY_MARKED_ABSENT = "ALREADY_MARKED_ABSENT"
GUARD_ALREADY_CLOCKED_IN = "ALREADY_CLOCKED_IN"
GUARD_OUTSIDE_BUSINESS_HOURS = "OUTSIDE_BUSINESS_HOURS"
GUARD_DAY_CLOSED = "DAY_CLOSED"
GUARD_NOT_CLOCKED_IN = "NOT_CLOCKED_IN"
GUARD_BREAK_ALREADY_TAKEN = "BREAK_ALREADY_TAKEN"
GUARD_NOT_ON_BREAK = "NOT_ON_BREAK"

NOT_FOUND_NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR"):
        super().__init__(422, code, message)


class GuardViolation(ApiError):
    """A state-machine precondition failed; `code` names the guard."""

    def __init__(self, code: str, message: str):
        super().__init__(409, code, message)

    @property
    def reason(self) -> str:
        return self.code


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(404, code, message)


class ConcurrencyConflict(ApiError):
    """A conditional update matched no row: someone else changed the record first."""

    def __init__(self, message: str = "Record changed concurrently.", *, record_id: int | None = None):
        super().__init__(409, "CONCURRENCY_CONFLICT", message)
        self.record_id = record_id


class DuplicateKeyError(ApiError):
    def __init__(self, message: str = "Record already exists.", *, user_id: int | None = None, date_key: str | None = None):
        super().__init__(409, "DUPLICATE_RECORD", message)
        self.user_id = user_id
        self.date_key = date_key


class DependencyError(ApiError):
    def __init__(self, message: str, *, dependency: str):
        super().__init__(503, "DEPENDENCY_UNAVAILABLE", message)
        self.dependency = dependency


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
