from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from seasonpool.runtime.errors import (
    DistributionInProgressError,
    InsufficientDataError,
    InsufficientPowerError,
    LedgerUnavailableError,
    LockLostError,
    NotFoundError,
    SeasonFinalizedError,
    SelfDelegationError,
    ServiceError,
    StaleCacheError,
    ValidationError,
)


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def unprocessable(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(422, code, message, details or {})

    @staticmethod
    def unavailable(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(503, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}},
        )


# Most specific first: subclasses are listed before their bases.
_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (SelfDelegationError, 422),
    (InsufficientPowerError, 422),
    (InsufficientDataError, 422),
    (ValidationError, 400),
    (DistributionInProgressError, 409),
    (SeasonFinalizedError, 409),
    (LockLostError, 409),
    (StaleCacheError, 503),
    (LedgerUnavailableError, 503),
)


def api_error_from_service(err: ServiceError) -> ApiError:
    details = err.details if isinstance(err.details, dict) else ({} if err.details is None else {"info": err.details})
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(err, cls):
            return ApiError(status, err.code, err.reason, details)
    return ApiError(500, err.code, err.reason, details)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return exc.to_response()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return api_error_from_service(exc).to_response()
