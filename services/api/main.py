import os
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from concepta.exceptions import ConceptaError
from concepta.logging_config import setup_logging_from_settings
from services.api.exception_handlers import concepta_exception_handler
from services.api.routes import render_router
from services.api.routes import router as zoning_router
from services.api.utils import resolve_settings


def create_app() -> FastAPI:
    settings = resolve_settings()

    # Setup structured logging; environment overrides the config file
    overrides: dict[str, Any] = {}
    if os.getenv("LOG_LEVEL"):
        overrides["level"] = os.environ["LOG_LEVEL"]
    if os.getenv("JSON_LOGGING"):
        overrides["json_format"] = os.environ["JSON_LOGGING"].lower() in {"true", "1", "yes"}
    if os.getenv("LOG_FILE"):
        overrides["log_file"] = Path(os.environ["LOG_FILE"])
    setup_logging_from_settings(settings.logging.model_copy(update=overrides))

    app = FastAPI(
        title="Concepta API",
        version="0.1.0",
        description="Zoning rights extraction, unit-mix generation and massing concepts",
    )

    ui_origin = os.getenv("UI_ORIGIN", "http://localhost:3000")
    allowed_origins = sorted({ui_origin, "http://localhost:3000", "http://127.0.0.1:3000"})
    logger.info(f"CORS allowed origins: {allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _log_settings() -> None:
        logger.info(
            "API initialised with provider={provider} unit_mix_model={model} catalogue={types}",
            provider=settings.provider.name,
            model=settings.provider.models.unit_mix,
            types=[entry.unit_type for entry in settings.catalogue],
        )

    @app.get("/healthz", tags=["meta"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    # Register exception handlers
    app.add_exception_handler(ConceptaError, concepta_exception_handler)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions with a JSON body."""
        logger.exception("Unhandled exception", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": type(exc).__name__,
                "message": str(exc),
            },
        )

    app.include_router(zoning_router)
    app.include_router(render_router)

    return app


app = create_app()


__all__ = ["app", "create_app"]
