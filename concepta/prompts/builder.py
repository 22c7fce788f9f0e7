from __future__ import annotations

import json
import math
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from loguru import logger
from pydantic import BaseModel, Field

from concepta.exceptions import TemplateError
from concepta.settings import PromptSettings

PLACEHOLDER_RE = re.compile(r"\{([A-Z][A-Z0-9_]*)\}")

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "templates"


class PromptTemplate(BaseModel):
    """A named prompt with ``{UPPER_SNAKE}`` placeholders."""

    name: str = Field(..., min_length=1)
    version: int = 1
    description: str = ""
    template: str = Field(..., min_length=1)

    @property
    def placeholders(self) -> list[str]:
        return list(dict.fromkeys(PLACEHOLDER_RE.findall(self.template)))

    @classmethod
    def from_file(cls, path: Path) -> "PromptTemplate":
        with path.open("r", encoding="utf-8") as fp:
            payload = yaml.safe_load(fp) or {}
        if not isinstance(payload, dict):
            raise TemplateError(f"Prompt template {path.name} is not a mapping", {"path": str(path)})
        payload.setdefault("name", path.stem)
        try:
            return cls(**payload)
        except ValueError as exc:
            raise TemplateError(f"Invalid prompt template {path.name}: {exc}", {"path": str(path)}) from exc


def _format_number(value: float, thousands_separators: bool) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"non-finite number {value!r}")
    if isinstance(value, int) or float(value).is_integer():
        number = int(value)
        return f"{number:,}" if thousands_separators else str(number)
    if thousands_separators:
        whole, _, fraction = repr(float(value)).partition(".")
        return f"{int(whole):,}.{fraction}"
    return repr(float(value))


def render_value(value: Any, *, list_separator: str = ", ", thousands_separators: bool = False) -> str:
    """Textual form of one binding value.

    Raises:
        ValueError: The value is None or cannot be rendered.
    """
    if value is None:
        raise ValueError("value is None")
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value, thousands_separators)
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"), indent=2, ensure_ascii=False)
    if isinstance(value, Mapping):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    if isinstance(value, (list, tuple)):
        return list_separator.join(
            render_value(item, list_separator=list_separator, thousands_separators=thousands_separators)
            for item in value
        )
    return str(value)


class PromptBuilder:
    """Renders named templates by substituting ``{PLACEHOLDER}`` bindings."""

    def __init__(self, templates_dir: Path | None = None, list_separator: str = ", ") -> None:
        self.templates_dir = templates_dir or DEFAULT_TEMPLATES_DIR
        self.list_separator = list_separator
        self._templates: dict[str, PromptTemplate] = {}

    @classmethod
    def from_settings(cls, settings: PromptSettings) -> "PromptBuilder":
        return cls(templates_dir=settings.templates_dir, list_separator=settings.list_separator)

    def register(self, template: PromptTemplate) -> None:
        self._templates[template.name] = template

    def template(self, name: str) -> PromptTemplate:
        cached = self._templates.get(name)
        if cached is not None:
            return cached
        path = self.templates_dir / f"{name}.yaml"
        if not path.exists():
            raise TemplateError(f"Unknown prompt template: {name}", template=name)
        template = PromptTemplate.from_file(path)
        self._templates[name] = template
        return template

    def available(self) -> list[str]:
        names = {path.stem for path in self.templates_dir.glob("*.yaml")}
        names.update(self._templates)
        return sorted(names)

    def render(
        self,
        name: str,
        bindings: Mapping[str, Any],
        *,
        thousands_separators: bool = False,
    ) -> str:
        """Render template ``name`` with ``bindings``.

        Every placeholder occurrence receives the same value and substituted
        text is never scanned again, so values containing braces are safe.

        Raises:
            TemplateError: Unknown template, or bindings missing or None for
                any placeholder. Nothing is rendered in that case.
        """
        template = self.template(name)
        placeholders = template.placeholders
        missing = [key for key in placeholders if key not in bindings]
        if missing:
            raise TemplateError(
                f"Missing bindings for template {name}: {', '.join(missing)}",
                template=name,
                missing=missing,
            )

        rendered: dict[str, str] = {}
        null_keys: list[str] = []
        for key in placeholders:
            value = bindings[key]
            if value is None:
                null_keys.append(key)
                continue
            try:
                rendered[key] = render_value(
                    value,
                    list_separator=self.list_separator,
                    thousands_separators=thousands_separators,
                )
            except (TypeError, ValueError) as exc:
                raise TemplateError(
                    f"Cannot render binding {key} for template {name}: {exc}",
                    {"key": key},
                    template=name,
                ) from exc
        if null_keys:
            raise TemplateError(
                f"Null bindings for template {name}: {', '.join(null_keys)}",
                template=name,
                missing=null_keys,
            )

        prompt = PLACEHOLDER_RE.sub(lambda match: rendered[match.group(1)], template.template)
        logger.debug(
            "Rendered prompt {name} v{version} ({size} chars)",
            name=name,
            version=template.version,
            size=len(prompt),
        )
        return prompt


@lru_cache(maxsize=1)
def default_builder() -> PromptBuilder:
    return PromptBuilder()
