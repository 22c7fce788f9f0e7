from concepta.prompts.builder import (
    PLACEHOLDER_RE,
    PromptBuilder,
    PromptTemplate,
    default_builder,
    render_value,
)

__all__ = [
    "PLACEHOLDER_RE",
    "PromptBuilder",
    "PromptTemplate",
    "default_builder",
    "render_value",
]
