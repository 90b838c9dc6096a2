"""Extract candidate memory slices from assistant responses.

Structured answers ("Decisions:", "Risks:" headings with bullets) are
read section by section. Unstructured answers fall back to cue sentences
("we decided", "risk", "must not"), and if nothing qualifies the whole
response becomes a single episode slice.
"""

import re
from dataclasses import dataclass, field

from rlmkit.memory.models import TYPE_IMPORTANCE, SliceType

HEADING_RE = re.compile(
    r"^(?:#+\s*|\*\*)?(decisions?|actions?(?: items?)?|risks?|constraints?|entities|entity|open questions?)(?:\*\*)?\s*(?:[:\-]\s*|$)",
    re.IGNORECASE,
)
BULLET_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s*")

CUE_PATTERNS: list[tuple[SliceType, re.Pattern]] = [
    (SliceType.DECISION, re.compile(r"\b(decided|agreed|approved|chose|decision|finalized)\b", re.IGNORECASE)),
    (SliceType.RISK, re.compile(r"\b(risks?|concerns?|blockers?|threat|could delay|might fail)\b", re.IGNORECASE)),
    (SliceType.CONSTRAINT, re.compile(r"\b(must not|cannot|can't|must|deadline|budget of|limited to|requirement)\b", re.IGNORECASE)),
    (SliceType.ACTION, re.compile(r"\b(will|to do|follow up|owner|assigned|next step)\b", re.IGNORECASE)),
    (SliceType.OPEN_QUESTION, re.compile(r"\?\s*$")),
]

TENTATIVE_RE = re.compile(
    r"\b(tentative(?:ly)?|proposed|propose|consider(?:ing)?|maybe|might|pending|draft|leaning)\b",
    re.IGNORECASE,
)
CONFIRMED_RE = re.compile(r"\b(confirmed|finali[sz]ed|signed off|approved|locked in)\b", re.IGNORECASE)

ENTITY_RE = re.compile(r"\b[A-Z][a-zA-Z0-9_-]{2,}(?:\s+[A-Z][a-zA-Z0-9_-]{2,})*\b")
# Capitalized words that are not entities
ENTITY_STOPWORDS = frozenset({
    "The", "This", "That", "These", "Those", "There", "What", "When", "Where",
    "Why", "How", "Who", "And", "But", "However", "Also", "Summary", "Source",
    "Decision", "Decisions", "Action", "Actions", "Risk", "Risks", "Meeting",
    "Open", "Question", "Questions", "Constraint", "Constraints", "Entities",
    "Key", "Points", "Items", "Sources", "Overall", "Both", "All", "Each",
})
MAX_ENTITIES = 8

SUMMARY_CHARS = 320


@dataclass
class ExtractedSlice:
    """A slice candidate before dedup and merge."""
    type: SliceType
    text: str
    entities: list[str] = field(default_factory=list)
    confidence: float = 0.6
    importance: float = 0.5


def normalize_type(label: str) -> SliceType:
    label = label.lower()
    if label.startswith("decision"):
        return SliceType.DECISION
    if label.startswith("action"):
        return SliceType.ACTION
    if label.startswith("risk"):
        return SliceType.RISK
    if label.startswith("constraint"):
        return SliceType.CONSTRAINT
    if label.startswith("entit"):
        return SliceType.ENTITY
    if label.startswith("open"):
        return SliceType.OPEN_QUESTION
    return SliceType.EPISODE


def canonical_entity(name: str) -> str:
    """Alias key for an entity name: ``"the Acme Corp's"`` -> ``"acme corp"``."""
    key = name.strip().lower()
    key = re.sub(r"['’]s\b", "", key)
    key = re.sub(r"[^\w\s-]", " ", key)
    key = re.sub(r"^(the|a|an)\s+", "", key)
    key = re.sub(r"\s+(inc|ltd|llc|corp|corporation|co)$", "", key)
    return re.sub(r"\s+", " ", key).strip()


def extract_entities(text: str) -> list[str]:
    """Capitalized names in first-seen order, at most eight."""
    if not text:
        return []
    seen: dict[str, str] = {}
    for match in ENTITY_RE.findall(text):
        words = [w for w in match.split() if w not in ENTITY_STOPWORDS]
        if not words:
            continue
        name = " ".join(words)
        seen.setdefault(canonical_entity(name), name)
        if len(seen) >= MAX_ENTITIES:
            break
    return list(seen.values())


def summarize_response(response: str, max_chars: int = SUMMARY_CHARS) -> str:
    """Collapse whitespace and cut at a sentence boundary near ``max_chars``."""
    if not response:
        return ""
    trimmed = re.sub(r"\s+", " ", response).strip()
    if len(trimmed) <= max_chars:
        return trimmed
    cutoff = trimmed.rfind(".", 0, max_chars)
    if cutoff > max_chars * 0.4:
        return trimmed[: cutoff + 1]
    return trimmed[:max_chars] + "..."


def decision_status_hint(text: str) -> bool:
    """True when the wording marks a decision as tentative."""
    return bool(TENTATIVE_RE.search(text)) and not CONFIRMED_RE.search(text)


def _make(slice_type: SliceType, text: str, confidence: float) -> ExtractedSlice:
    if slice_type == SliceType.ENTITY:
        entities = extract_entities(text) or [text.strip()]
    else:
        entities = extract_entities(text)
    return ExtractedSlice(
        type=slice_type,
        text=text,
        entities=entities,
        confidence=confidence,
        importance=TYPE_IMPORTANCE[slice_type],
    )


def _split_sentences(text: str) -> list[str]:
    parts = re.split(r"(?<=[.!?])\s+|\n+", text)
    return [p.strip(" -*•") for p in parts if len(p.strip()) > 12]


def extract_slices(response: str) -> list[ExtractedSlice]:
    """Candidate slices from one response, in document order."""
    if not response or not response.strip():
        return []

    slices: list[ExtractedSlice] = []
    active_type: SliceType | None = None
    for raw in response.splitlines():
        line = raw.strip()
        if not line:
            continue
        heading = HEADING_RE.match(line)
        if heading:
            active_type = normalize_type(heading.group(1))
            remainder = line[heading.end():].strip(" *")
            if remainder:
                slices.append(_make(active_type, remainder, 0.6))
            continue
        if active_type is not None and BULLET_RE.match(line):
            text = BULLET_RE.sub("", line).strip()
            if text:
                slices.append(_make(active_type, text, 0.6))
            continue
        active_type = None

    if slices:
        return slices

    # Cue-sentence fallback for prose answers
    for sentence in _split_sentences(response):
        for slice_type, pattern in CUE_PATTERNS:
            if pattern.search(sentence):
                slices.append(_make(slice_type, sentence, 0.5))
                break

    if slices:
        return slices

    fallback = summarize_response(response)
    return [ExtractedSlice(
        type=SliceType.EPISODE,
        text=fallback,
        entities=extract_entities(fallback),
        confidence=0.4,
        importance=0.4,
    )]


def infer_query_tags(query: str) -> list[str]:
    """Slice-type tags a query asks about explicitly."""
    query = (query or "").lower()
    tags = []
    if re.search(r"\bdecision(s)?\b|\bdecided\b", query):
        tags.append(SliceType.DECISION.value)
    if re.search(r"\baction(s| items?)?\b|\btasks?\b", query):
        tags.append(SliceType.ACTION.value)
    if re.search(r"\brisk(s|y)?\b", query):
        tags.append(SliceType.RISK.value)
    if re.search(r"\bconstraint(s)?\b", query):
        tags.append(SliceType.CONSTRAINT.value)
    if re.search(r"\bentit(y|ies)\b|\bwho\b", query):
        tags.append(SliceType.ENTITY.value)
    if re.search(r"\bopen questions?\b|\bunresolved\b", query):
        tags.append(SliceType.OPEN_QUESTION.value)
    return tags
