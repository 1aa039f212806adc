"""
Exception handlers for the evaluation API.

Every error body has the same shape: error code, message, optional details
and the request id assigned by RequestIDMiddleware.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from formengine.domain.forms.errors import FormDefinitionError

logger = logging.getLogger(__name__)


def error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def add_exception_handlers(app: FastAPI):
    """Register the engine's exception handlers on `app`."""

    @app.exception_handler(FormDefinitionError)
    async def definition_error_handler(request: Request, exc: FormDefinitionError):
        logger.warning(f"Rejected form definition at '{exc.path or '<root>'}': {exc}")
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "invalid_definition",
            str(exc),
            {"path": exc.path} if exc.path else None,
        )

    @app.exception_handler(ValidationError)
    async def model_error_handler(request: Request, exc: ValidationError):
        logger.error(f"Validation error: {exc}")
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "Validation failed",
            exc.errors(include_url=False),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Evaluation failed on {request.url.path}: {exc}", exc_info=True)
        return error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred",
        )
