"""
API error types and their JSON rendering.

Every error body has the shape {"error": <reason phrase>, "message": ..., "code": ...}.
"""

import logging
from http import HTTPStatus

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Raised by route code; rendered with its status code."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(APIError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(APIError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(APIError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(APIError):
    status_code = status.HTTP_404_NOT_FOUND


class MethodNotAllowed(APIError):
    status_code = status.HTTP_405_METHOD_NOT_ALLOWED


class Conflict(APIError):
    status_code = status.HTTP_409_CONFLICT


class BadGateway(APIError):
    status_code = status.HTTP_502_BAD_GATEWAY


class ServiceUnavailable(APIError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def error_body(status_code: int, message: str) -> dict:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        phrase = "Error"
    return {"error": phrase, "message": message, "code": status_code}


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(status_code, message))


# =============================================================================
# Exception Handlers
# =============================================================================

async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return error_response(exc.status_code, exc.message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors (unknown path, wrong method) in the same error shape."""
    response = error_response(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation failures are 400s, reported with the first offending field."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        if location:
            message = f"{location}: {message}"
    else:
        message = "Invalid request"
    logger.info(f"Request validation failed: {message}")
    return error_response(status.HTTP_400_BAD_REQUEST, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def register_exception_handlers(app) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
