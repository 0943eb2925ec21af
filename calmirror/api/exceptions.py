"""Exception handlers mapping sync errors onto HTTP responses."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from calmirror.core.exceptions import CalMirrorError

logger = logging.getLogger(__name__)


async def calmirror_exception_handler(request: Request, exc: CalMirrorError) -> JSONResponse:
    """Translate a CalMirrorError into its carried status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": exc.message},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler so unexpected failures are logged and reported as 500."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "InternalServerError", "detail": "Internal server error"},
    )
