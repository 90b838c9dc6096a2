"""Text helpers shared by the retrieval, dedup and budget code."""

import hashlib
import math
import re

# Words too common to carry relevance signal
STOPWORDS = frozenset({
    "the", "is", "at", "which", "on", "a", "an", "and", "or", "but",
    "in", "with", "to", "for", "of", "as", "by", "from", "what",
    "where", "when", "why", "how", "who", "about", "can", "could",
    "should", "would", "will", "are", "was", "were", "been", "be",
    "have", "has", "had", "do", "does", "did", "this", "that",
    "these", "those", "there", "here", "all", "each", "every",
    "both", "few", "more", "most", "other", "some", "such", "than",
    "too", "very", "just", "also", "now", "only", "then", "so",
    "their", "being", "into", "our", "your", "they", "them", "its",
})

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9_'-]*")

CHARS_PER_TOKEN = 4


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens, punctuation stripped."""
    if not text:
        return []
    return _WORD_RE.findall(text.lower())


def extract_keywords(text: str, min_length: int = 3) -> list[str]:
    """Unique non-stopword tokens in first-seen order."""
    seen: dict[str, None] = {}
    for word in tokenize(text):
        if len(word) >= min_length and word not in STOPWORDS:
            seen.setdefault(word, None)
    return list(seen)


def jaccard_similarity(a: str, b: str, min_length: int = 4) -> float:
    """Word-set overlap of two texts, counting only words of at least ``min_length`` chars."""
    words_a = {w for w in tokenize(a) if len(w) >= min_length}
    words_b = {w for w in tokenize(b) if len(w) >= min_length}
    if not words_a and not words_b:
        return 1.0 if a.strip().lower() == b.strip().lower() else 0.0
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Edit distance using the Wagner-Fischer algorithm.

    Keeps only two DP rows, so memory is O(min(len1, len2)).
    """
    if s1 == s2:
        return 0
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    len1 = len(s2)
    if len1 == 0:
        return len(s1)

    prev_row = list(range(len1 + 1))
    curr_row = [0] * (len1 + 1)

    for i, c1 in enumerate(s1, start=1):
        curr_row[0] = i
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            curr_row[j] = min(
                prev_row[j] + 1,  # deletion
                curr_row[j - 1] + 1,  # insertion
                prev_row[j - 1] + cost,  # substitution
            )
        prev_row, curr_row = curr_row, prev_row

    return prev_row[len1]


def string_similarity(a: str, b: str) -> float:
    """Normalized edit similarity in [0, 1]: ``1 - distance / max_len``."""
    if a == b:
        return 1.0
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max_len


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Character-count token estimate. Approximate by construction."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def truncate_to_tokens(text: str, max_tokens: int, chars_per_token: int = CHARS_PER_TOKEN) -> str:
    """Cut ``text`` so its estimate fits ``max_tokens``, marking the cut."""
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text, chars_per_token) <= max_tokens:
        return text
    marker = "..."
    limit = max_tokens * chars_per_token - len(marker)
    if limit <= 0:
        return text[: max_tokens * chars_per_token]
    return text[:limit].rstrip() + marker


def content_hash(text: str) -> str:
    """Stable short hash of normalized text, used as a dedup key."""
    normalized = " ".join(tokenize(text))
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]
