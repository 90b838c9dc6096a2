"""Token-budgeted prompt assembly."""

from rlmkit.prompt.builder import (
    DEFAULT_SYSTEM_INSTRUCTIONS,
    BuiltPrompt,
    PromptBuilder,
    PromptSection,
)

__all__ = ["BuiltPrompt", "DEFAULT_SYSTEM_INSTRUCTIONS", "PromptBuilder", "PromptSection"]
