from __future__ import annotations

from chapter_tutor.domain.models import Chapter, ScopeDecision

DEFAULT_CONFIDENCE_THRESHOLD = 0.3


def keyword_confidence(matches: int, keyword_count: int) -> float:
    """A tenth of the keyword list (at least one keyword) counts as full confidence."""
    if matches <= 0:
        return 0.0
    return min(matches / max(keyword_count * 0.1, 1.0), 1.0)


def classify_scope(
    question: str,
    chapter: Chapter,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> ScopeDecision:
    """
    Pure keyword-substring scope check. Never raises and performs no I/O.
    """
    text = str(question or "").lower()
    keywords = [str(k).strip().lower() for k in chapter.keywords]
    keywords = [k for k in keywords if k]

    matched = tuple(k for k in keywords if k in text)
    if not matched:
        return ScopeDecision(in_scope=False, confidence=0.0, reason="no keyword match")

    confidence = keyword_confidence(len(matched), len(keywords))
    listed = ", ".join(matched)
    if confidence < threshold:
        return ScopeDecision(
            in_scope=False,
            confidence=confidence,
            reason=f"low keyword match: {listed}",
            matched_keywords=matched,
        )
    return ScopeDecision(
        in_scope=True,
        confidence=confidence,
        reason=f"matched keywords: {listed}",
        matched_keywords=matched,
    )


class ScopeClassifier:
    def __init__(self, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD):
        self.threshold = threshold

    def classify(self, question: str, chapter: Chapter) -> ScopeDecision:
        return classify_scope(question, chapter, threshold=self.threshold)

    def is_admitted(self, decision: ScopeDecision) -> bool:
        return decision.in_scope and decision.confidence >= self.threshold
