"""Conflict Detection - lexical agreement/disagreement between sibling answers.

For every pair of successful sibling results the detector counts
contrast and agreement markers in both texts and measures word overlap.
Everything is computed from the unordered pair, so ``analyze([A, B])``
and ``analyze([B, A])`` produce the same report.
"""

import re
from collections import Counter
from itertools import combinations

from loguru import logger

from rlmkit.rlm.models import (
    SIBLING_KINDS,
    ConflictReport,
    ExecutionResult,
    PairAnalysis,
    PairRelation,
)
from rlmkit.utils.text import jaccard_similarity

CONFLICT_MARKERS = (
    "however", "but", "although", "despite", "contrary", "disagree", "conflict",
    "tension", "risk", "concern", "alternatively", "on the other hand", "versus", "vs",
    "challenge", "issue", "problem", "limitation", "obstacle", "whereas", "unlike",
    "contrast", "differ", "instead",
)

AGREEMENT_MARKERS = (
    "also", "similarly", "agrees", "confirms", "supports", "consistent", "aligns",
    "reinforces", "validates", "likewise", "as well", "in line with", "corroborates",
    "echoes", "mirrors", "matches", "concurs",
)

THEME_STOPWORDS = frozenset({
    "that", "this", "with", "from", "have", "been", "were", "their", "would", "could",
    "should", "about", "which", "there", "these", "those", "being", "other", "meeting",
    "discussed", "mentioned", "noted", "stated", "regarding", "related", "based",
    "according", "following",
})

HIGH_SIMILARITY = 0.75
MAX_THEMES = 5


def _marker_patterns(markers: tuple[str, ...]) -> list[re.Pattern]:
    return [re.compile(rf"\b{re.escape(m)}\b", re.IGNORECASE) for m in markers]


_CONFLICT_RE = _marker_patterns(CONFLICT_MARKERS)
_AGREEMENT_RE = _marker_patterns(AGREEMENT_MARKERS)
_WORD_RE = re.compile(r"[a-z0-9']+")


def count_markers(text: str, patterns: list[re.Pattern]) -> int:
    return sum(len(p.findall(text)) for p in patterns)


def theme_words(text: str) -> Counter:
    return Counter(
        w for w in _WORD_RE.findall(text.lower())
        if len(w) > 4 and w not in THEME_STOPWORDS
    )


class ConflictDetector:
    """Classify each pair of sibling results as a conflict or an agreement."""

    def analyze(self, results: list[ExecutionResult]) -> ConflictReport:
        candidates = [
            r for r in results
            if r.success and r.response.strip() and r.kind in SIBLING_KINDS
        ]
        # Order-independent pairing
        candidates.sort(key=lambda r: r.sub_query_id)

        pairs: list[PairAnalysis] = []
        for first, second in combinations(candidates, 2):
            pairs.append(self.compare(first, second))

        report = ConflictReport(pairs=pairs)
        report.themes = self._report_themes(report.conflicts)
        report.summary = self._summary(report)
        if pairs:
            logger.debug(
                f"Conflict analysis: {len(report.conflicts)} conflicts, "
                f"{len(report.agreements)} agreements over {len(candidates)} results"
            )
        return report

    def compare(self, a: ExecutionResult, b: ExecutionResult) -> PairAnalysis:
        """Relation between two results.

        Ties in marker counts go to agreement, so every pair gets a relation.
        """
        first, second = sorted((a, b), key=lambda r: r.sub_query_id)
        similarity = jaccard_similarity(first.response, second.response)
        conflict_score = count_markers(first.response, _CONFLICT_RE) + count_markers(second.response, _CONFLICT_RE)
        agreement_score = count_markers(first.response, _AGREEMENT_RE) + count_markers(second.response, _AGREEMENT_RE)

        if conflict_score > agreement_score and similarity < HIGH_SIMILARITY:
            relation = PairRelation.CONFLICT
            confidence = min(1.0, 0.5 + 0.1 * conflict_score)
        else:
            relation = PairRelation.AGREEMENT
            confidence = min(1.0, 0.5 + 0.1 * agreement_score + 0.3 * similarity)

        return PairAnalysis(
            first_id=first.sub_query_id,
            second_id=second.sub_query_id,
            relation=relation,
            confidence=round(confidence, 4),
            similarity=round(similarity, 4),
            conflict_score=conflict_score,
            agreement_score=agreement_score,
            themes=self._shared_themes(first.response, second.response),
        )

    @staticmethod
    def _shared_themes(a: str, b: str) -> list[str]:
        words_a, words_b = theme_words(a), theme_words(b)
        shared = set(words_a) & set(words_b)
        ranked = sorted(shared, key=lambda w: (-(words_a[w] + words_b[w]), w))
        return ranked[:MAX_THEMES]

    @staticmethod
    def _report_themes(conflicts: list[PairAnalysis]) -> list[str]:
        counts: Counter = Counter()
        for pair in conflicts:
            counts.update(pair.themes)
        return [w for w, _ in sorted(counts.items(), key=lambda item: (-item[1], item[0]))][:MAX_THEMES]

    @staticmethod
    def _summary(report: ConflictReport) -> str:
        if not report.pairs:
            return ""
        if not report.has_conflicts:
            return f"Sources broadly agree ({len(report.agreements)} agreeing pairs)."
        summary = f"Found {len(report.conflicts)} conflicting and {len(report.agreements)} agreeing pairs."
        if report.themes:
            summary += f" Tensions around: {', '.join(report.themes)}."
        return summary
