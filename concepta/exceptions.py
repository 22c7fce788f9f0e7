"""Custom exception hierarchy for Concepta."""

from __future__ import annotations

from typing import Any


class ConceptaError(Exception):
    """Base exception for all Concepta-specific errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ConceptaError):
    """Raised when configuration is invalid or missing."""
    pass


class TemplateError(ConceptaError):
    """Raised when a prompt template cannot be rendered from its bindings."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        template: str | None = None,
        missing: list[str] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.template = template
        self.missing = list(missing or [])
        if template:
            self.details.setdefault("template", template)
        if self.missing:
            self.details.setdefault("missing", self.missing)


class ProviderError(ConceptaError):
    """Raised when the completion provider call fails or returns nothing."""
    pass


class ParseError(ConceptaError):
    """Raised when no JSON payload can be located or parsed in a completion."""

    def __init__(self, message: str, raw_text: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.raw_text = raw_text


class ValidationError(ConceptaError):
    """Raised when a payload is missing required fields or has wrong types."""

    def __init__(self, message: str, path: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.path = path
        if path:
            self.details.setdefault("path", path)


class ReconciliationError(ConceptaError):
    """Raised on request when a parsed object carries arithmetic discrepancies."""

    def __init__(self, message: str, discrepancies: list[Any], details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.discrepancies = list(discrepancies)


class WorkflowError(ConceptaError):
    """Raised when a session transition is not allowed from its current stage."""
    pass
