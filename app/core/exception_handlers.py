"""Exception handlers mapping skill installation errors to HTTP responses."""

from typing import Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.logging import logger
from app.core.skills.errors import (
    ErrorCode,
    SkillInstallationError,
)

ERROR_STATUS_CODES: Dict[ErrorCode, int] = {
    ErrorCode.PACKAGE_NOT_FOUND: 404,
    ErrorCode.INSTALLATION_NOT_FOUND: 404,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.ALREADY_INSTALLED: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
    ErrorCode.CIRCULAR_DEPENDENCY: 422,
    ErrorCode.MISSING_DEPENDENCY: 422,
    ErrorCode.MALFORMED_PACKAGE: 422,
    ErrorCode.MATERIALIZATION_FAILED: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


async def skill_installation_error_handler(request: Request, exc: SkillInstallationError) -> JSONResponse:
    """Render a domain error as ``{"detail", "code", "details"}``.

    Args:
        request: The FastAPI request object.
        exc: The domain error.

    Returns:
        JSONResponse: The error response with the mapped status code.
    """
    status_code = ERROR_STATUS_CODES.get(exc.code, 500)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "skill_installation_error",
        status_code=status_code,
        error_code=exc.code.value,
        message=exc.message,
        url=str(request.url),
        method=request.method,
    )

    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code.value, "details": exc.details},
    )
