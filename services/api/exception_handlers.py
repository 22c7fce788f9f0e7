"""FastAPI exception handlers for custom exceptions."""

from __future__ import annotations

from fastapi import Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from concepta.exceptions import (
    ConceptaError,
    ConfigurationError,
    ParseError,
    ProviderError,
    ReconciliationError,
    TemplateError,
    ValidationError,
    WorkflowError,
)


def status_for(exc: ConceptaError) -> int:
    if isinstance(exc, (ValidationError, ReconciliationError)):
        return 422
    if isinstance(exc, (ProviderError, ParseError)):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, WorkflowError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (TemplateError, ConfigurationError)):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def concepta_exception_handler(request: Request, exc: ConceptaError) -> JSONResponse:
    """Handle Concepta-specific exceptions."""
    status_code = status_for(exc)

    logger.error(
        "Concepta exception: {type} - {message}",
        type=type(exc).__name__,
        message=str(exc),
        details=exc.details,
    )

    details = dict(exc.details)
    if isinstance(exc, ReconciliationError):
        details["discrepancies"] = [
            d.model_dump(mode="json") if hasattr(d, "model_dump") else str(d) for d in exc.discrepancies
        ]

    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "details": details,
        },
    )
