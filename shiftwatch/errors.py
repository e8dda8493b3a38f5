from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class NotFoundError(ApiError):
    def __init__(self, code: str = "NOT_FOUND", message: str = "Resource not found."):
        super().__init__(status_code=404, code=code, message=message)


class ConflictError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(status_code=409, code=code, message=message)


class AlreadyRecordedError(ConflictError):
    def __init__(self, message: str = "Attendance already recorded for this shift."):
        super().__init__(code="ATTENDANCE_ALREADY_RECORDED", message=message)


class AlreadyResolvedError(ConflictError):
    def __init__(self, message: str = "Alert is already resolved."):
        super().__init__(code="ALERT_ALREADY_RESOLVED", message=message)


class ShiftClosedError(ConflictError):
    def __init__(self, message: str = "Shift is not active."):
        super().__init__(code="SHIFT_NOT_ACTIVE", message=message)


class UnauthorizedError(ApiError):
    def __init__(self, code: str = "INVALID_TOKEN", message: str = "Token is invalid."):
        super().__init__(status_code=401, code=code, message=message)


class ForbiddenError(ApiError):
    def __init__(self, code: str = "FORBIDDEN", message: str = "Insufficient permissions."):
        super().__init__(status_code=403, code=code, message=message)


class TransientError(ApiError):
    """Storage or timeout failure. Nothing was applied; the caller may retry."""

    def __init__(self, message: str = "Temporary storage failure, please retry."):
        super().__init__(status_code=503, code="TRANSIENT_FAILURE", message=message)


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
