"""
Global error handling middleware.

Turns taxonomy errors into ``{"error": code, "message": ..., "details": ...}``
JSON bodies with a status that tells the caller what to do next.
"""

import time

from fastapi import Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from pos_sync.utils.exceptions import (
    AuthorizationExpired,
    ConfigurationError,
    IntegrationNotFound,
    PosSyncError,
    ProviderError,
    RateLimited,
    RefreshFailed,
    RepositoryError,
    TransientProviderError,
    ValidationError,
)
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Most specific first
STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationExpired, status.HTTP_400_BAD_REQUEST),
    (IntegrationNotFound, status.HTTP_404_NOT_FOUND),
    (RefreshFailed, status.HTTP_409_CONFLICT),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (TransientProviderError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (RepositoryError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(error: PosSyncError) -> int:
    for error_class, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(error: PosSyncError) -> JSONResponse:
    status_code = status_for(error)
    body = error.to_dict()
    if status_code >= 500 and isinstance(error, (RepositoryError, ConfigurationError)):
        # Internal details stay in the logs
        body["details"] = {}
    headers = {}
    if isinstance(error, RateLimited) and error.retry_after:
        headers["Retry-After"] = str(int(error.retry_after))
    return JSONResponse(status_code=status_code, content=body, headers=headers)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Middleware for consistent error handling and request logging.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(f"{request.method} {request.url.path} - {response.status_code} - {duration:.3f}s")
            return response

        except PosSyncError as e:
            response = error_response(e)
            if response.status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {e}")
            else:
                logger.warning(f"{request.method} {request.url.path} rejected: {e.code}: {e.message}")
            return response

        except SQLAlchemyError as e:
            logger.error(f"SQLAlchemy error: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "repository_error",
                    "message": "A database error occurred",
                    "details": {},
                },
            )

        except Exception as e:
            logger.error(f"Unhandled exception: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "internal_error",
                    "message": "An unexpected error occurred",
                    "details": {},
                },
            )
