"""Utility functions for rlmkit."""

from rlmkit.utils.logging import configure_logging
from rlmkit.utils.text import (
    content_hash,
    estimate_tokens,
    extract_keywords,
    jaccard_similarity,
    levenshtein_distance,
    string_similarity,
    tokenize,
    truncate_to_tokens,
)

__all__ = [
    "configure_logging",
    "content_hash",
    "estimate_tokens",
    "extract_keywords",
    "jaccard_similarity",
    "levenshtein_distance",
    "string_similarity",
    "tokenize",
    "truncate_to_tokens",
]
