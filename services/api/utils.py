"""Shared utilities for API routes."""

from __future__ import annotations

from loguru import logger

from concepta.settings import Settings, get_settings


def resolve_settings() -> Settings:
    """Configured settings, or built-in defaults when no config file exists."""
    try:
        return get_settings()
    except FileNotFoundError as exc:
        logger.warning("{error}; using built-in defaults", error=str(exc))
        return Settings()
