"""Translation of service error kinds into HTTP responses."""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from tenantguard.core.logging import get_logger
from tenantguard.core.result import REFRESH_ERROR_KINDS, Err, ErrorKind

logger = get_logger(__name__)

INVALID_REFRESH_TOKEN = "Invalid refresh token"
SERVICE_UNAVAILABLE = "Service temporarily unavailable, please retry"

_STATUS_BY_KIND = {
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_IMPERSONATING: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
}


def http_error(error: Err) -> HTTPException:
    """
    Map a service error to an HTTPException.

    Refresh failures all become the same 401 so callers cannot tell a missing
    token from an expired, revoked or replayed one.
    """
    if error.kind in REFRESH_ERROR_KINDS:
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_REFRESH_TOKEN,
        )
    if error.kind == ErrorKind.UNAVAILABLE:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=SERVICE_UNAVAILABLE,
            headers={"Retry-After": "1"},
        )
    return HTTPException(status_code=_STATUS_BY_KIND[error.kind], detail=error.message)


async def store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """503 for store outages raised outside a service's own Result mapping."""
    logger.warning("request_store_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": SERVICE_UNAVAILABLE},
        headers={"Retry-After": "1"},
    )
