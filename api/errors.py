from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from forge.core.exceptions import (
    CorrelationAnomalyError,
    CorrelationConflictError,
    DonationNotFoundError,
    MalformedLegError,
    SolarForgeError,
    StorageUnavailableError,
)


class ApiError(Exception):
    def __init__(self, code: str, message: str, status: int = 400, **extra: object) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.extra = extra


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    body = {"error": {"code": exc.code, "message": exc.message, **exc.extra}}
    return JSONResponse(status_code=exc.status, content=body)


def to_api_error(exc: SolarForgeError) -> ApiError:
    if isinstance(exc, CorrelationConflictError):
        return ApiError(
            code="donation.correlation_conflict",
            message=str(exc),
            status=409,
            user_id=exc.user_id,
            galaxy_id=exc.galaxy_id,
            counter=exc.counter,
            donation_id=exc.donation_id,
        )
    if isinstance(exc, CorrelationAnomalyError):
        return ApiError(
            code="donation.correlation_anomaly",
            message=str(exc),
            status=409,
            kind=exc.kind,
            leg_tx_id=exc.leg_tx_id,
            donation_id=exc.donation_id,
        )
    if isinstance(exc, MalformedLegError):
        return ApiError(code="leg.malformed", message=str(exc), status=422)
    if isinstance(exc, DonationNotFoundError):
        return ApiError(code="donation.not_found", message=str(exc), status=404)
    if isinstance(exc, StorageUnavailableError):
        return ApiError(code="storage.unavailable", message=str(exc), status=503)
    return ApiError(code="internal.error", message=str(exc), status=500)


async def solar_forge_error_handler(request: Request, exc: SolarForgeError) -> JSONResponse:
    return await api_error_handler(request, to_api_error(exc))
