"""
Domain exceptions and their HTTP mapping.
"""
import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PortalError(Exception):
    """Base exception for the notification core."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(PortalError):
    """Malformed input (subscription payload, recipient set, ...)."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(PortalError):
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDeniedError(PortalError):
    status_code = status.HTTP_403_FORBIDDEN


class ConfigurationError(PortalError):
    """Server-side setup is missing, e.g. no VAPID key pair."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        content: dict[str, Any] = {"success": False, "message": exc.message}
        if exc.details:
            content["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.info("%s %s invalid request: %s", request.method, request.url.path, errors)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "Invalid request", "details": {"errors": errors}},
        )
