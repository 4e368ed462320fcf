from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from typing import Optional, Dict
import logging

logger = logging.getLogger(__name__)


# ============================================
# DOMAIN ERRORS
# ============================================
class AppError(HTTPException):
    """
    Expected, client-facing failure.
    Subclasses fix the HTTP status and a stable `error` code.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "InternalError"
    message = "Internal server error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.message, headers=headers)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "ValidationError"
    message = "Invalid request"


class InvalidOrExpiredToken(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "InvalidOrExpiredToken"
    message = "Invalid or expired invitation token"


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"
    message = "Not authenticated"


class InvalidCredentials(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "InvalidCredentials"
    message = "Invalid credentials"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"
    message = "Not authorized"


class AccountSuspended(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "AccountSuspended"
    message = "Account suspended. Please contact support."


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFound"
    message = "Not found"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"
    message = "Already exists"


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "RateLimited"
    message = "Too many attempts. Please wait."


# ============================================
# HANDLERS
# ============================================
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "detail": exc.detail},
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed or missing input is a 400, not FastAPI's default 422."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": ValidationError.error,
            "detail": f"{field}: {message}" if field else message,
        },
    )


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch all unhandled exceptions and return proper error response.
    Internal detail is logged, never returned.
    """
    logger.error(f"Unhandled exception on {request.url.path}: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalError",
            "detail": "Internal server error",
        }
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
