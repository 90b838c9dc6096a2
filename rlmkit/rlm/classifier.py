"""Query Classification - lexical intent and complexity detection."""

import re

from loguru import logger

from rlmkit.errors import ClassificationAmbiguous
from rlmkit.rlm.models import Classification, Complexity, DataPreference, QueryType


def _words(*phrases: str) -> list[re.Pattern]:
    return [re.compile(rf"\b{p}\b", re.IGNORECASE) for p in phrases]


class QueryClassifier:
    """Classify a query's intent, complexity and output preferences.

    Each intent scores one point per distinct cue it matches. The highest
    score wins; ties between two intents are settled by ``PRECEDENCE``.
    When three or more intents tie for the top the query is treated as
    ambiguous and ``ClassificationAmbiguous`` is raised carrying a
    best-effort classification.
    """

    INTENT_PATTERNS: dict[QueryType, list[re.Pattern]] = {
        QueryType.COMPARATIVE: _words(
            "compare", "comparison", "differ", "differs", "difference", "differences",
            "different", "versus", r"vs\.?", "between", "contrast",
        ),
        QueryType.AGGREGATIVE: _words(
            "all", "every", "total", "combined", "across", "overall", "entire", "each",
        ),
        QueryType.ANALYTICAL: _words(
            "patterns?", "trends?", "themes?", "common", "recurring", "emerge", "emerging",
            "insights?", "underlying",
        ),
        QueryType.TEMPORAL: _words(
            "over time", "evolution", "evolved?", "changed?", "changes", "progress",
            "history", "timeline", "since",
        ),
        QueryType.SEARCH: _words(
            "search", "find", "look for", "locate", "where", "who said", "when was",
            "mentioned", "mentions?",
        ),
    }

    # Earlier wins a two-way tie
    PRECEDENCE = [
        QueryType.COMPARATIVE,
        QueryType.AGGREGATIVE,
        QueryType.ANALYTICAL,
        QueryType.TEMPORAL,
        QueryType.SEARCH,
    ]

    EXPLORATORY_RE = re.compile(r"\?.*\?|\band also\b|\badditionally\b|\bfurthermore\b|\bas well as\b", re.IGNORECASE | re.DOTALL)
    TIMEFRAME_RE = re.compile(r"\b(last|recent|recently|latest|this week|this month|yesterday|today)\b", re.IGNORECASE)

    FORMAT_PATTERNS: dict[str, re.Pattern] = {
        "list": re.compile(r"\b(list|bullets?|bullet points|enumerate)\b", re.IGNORECASE),
        "table": re.compile(r"\btable\b", re.IGNORECASE),
        "brief": re.compile(r"\b(brief|briefly|short|concise|tl;?dr|one sentence|quick)\b", re.IGNORECASE),
        "timeline": re.compile(r"\b(timeline|chronolog\w*)\b", re.IGNORECASE),
        "detailed": re.compile(r"\b(detailed|in depth|in-depth|thorough)\b", re.IGNORECASE),
    }

    DETAIL_RE = re.compile(r"\b(exact|exactly|quote|quotes|verbatim|transcript|word for word|details?)\b", re.IGNORECASE)
    SUMMARY_RE = re.compile(r"\b(overview|summary|summarize|high-level|gist)\b", re.IGNORECASE)

    LONG_QUERY_WORDS = 20
    MANY_AGENTS = 5

    def score_intents(self, query: str) -> dict[QueryType, int]:
        scores: dict[QueryType, int] = {}
        for intent, patterns in self.INTENT_PATTERNS.items():
            score = sum(1 for pattern in patterns if pattern.search(query))
            if score:
                scores[intent] = score
        return scores

    def classify(self, query: str, agent_count: int = 0) -> Classification:
        """Classify ``query`` given how many agents are in play.

        Raises:
            ClassificationAmbiguous: three or more intents tie for the top score.
                ``err.classification`` holds the best-effort result.
        """
        scores = self.score_intents(query)
        exploratory = bool(self.EXPLORATORY_RE.search(query))

        if scores:
            top = max(scores.values())
            tied = [intent for intent in self.PRECEDENCE if scores.get(intent) == top]
            intent = tied[0]
        else:
            tied = []
            intent = QueryType.FACTUAL

        classification = Classification(
            type=intent,
            complexity=self._complexity(query, intent, exploratory, agent_count),
            exploratory=exploratory,
            format_constraints=[name for name, p in self.FORMAT_PATTERNS.items() if p.search(query)],
            data_preference=self._data_preference(query),
            mentions_timeframe=bool(self.TIMEFRAME_RE.search(query)),
            intent_scores={k.value: v for k, v in scores.items()},
        )

        if len(tied) >= 3:
            classification.ambiguous = True
            logger.debug(f"Ambiguous intents {[t.value for t in tied]} for query: {query[:60]}")
            raise ClassificationAmbiguous(
                f"Competing intents: {', '.join(t.value for t in tied)}",
                classification=classification,
            )

        return classification

    def _complexity(self, query: str, intent: QueryType, exploratory: bool, agent_count: int) -> Complexity:
        points = 0
        if intent in (QueryType.COMPARATIVE, QueryType.AGGREGATIVE, QueryType.ANALYTICAL, QueryType.TEMPORAL):
            points += 1
        if exploratory:
            points += 1
        if len(query.split()) > self.LONG_QUERY_WORDS:
            points += 1
        if agent_count >= self.MANY_AGENTS and intent not in (QueryType.FACTUAL, QueryType.SEARCH):
            points += 1

        if points == 0:
            return Complexity.SIMPLE
        if points == 1:
            return Complexity.MODERATE
        return Complexity.COMPLEX

    def _data_preference(self, query: str) -> DataPreference:
        if self.DETAIL_RE.search(query):
            return DataPreference.DETAILED
        if self.TIMEFRAME_RE.search(query):
            return DataPreference.RECENT
        if self.SUMMARY_RE.search(query):
            return DataPreference.SUMMARY
        return DataPreference.STANDARD

    def classify_safely(self, query: str, agent_count: int = 0) -> Classification:
        """Like ``classify`` but returns the best-effort result for ambiguous queries."""
        try:
            return self.classify(query, agent_count)
        except ClassificationAmbiguous as e:
            return e.classification
