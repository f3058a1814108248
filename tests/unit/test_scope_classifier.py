from chapter_tutor.domain.models import Chapter, ScopeDecision
from chapter_tutor.domain.scope.classifier import ScopeClassifier, classify_scope, keyword_confidence
from tests.fakes import grammar_chapter, grammar_chapter_document


def _chapter_with_keywords(keywords: list[str]) -> Chapter:
    document = grammar_chapter_document()
    document["content"]["keywords"] = keywords
    return Chapter.model_validate(document)


def test_question_without_keywords_is_out_of_scope_with_zero_confidence() -> None:
    decision = classify_scope("What's the capital of France?", grammar_chapter())

    assert decision.in_scope is False
    assert decision.confidence == 0.0
    assert decision.reason == "no keyword match"
    assert decision.matched_keywords == ()


def test_question_with_every_keyword_has_full_confidence() -> None:
    chapter = grammar_chapter()
    question = " ".join(chapter.keywords)

    decision = classify_scope(question, chapter)

    assert decision.in_scope is True
    assert decision.confidence == 1.0
    assert len(decision.matched_keywords) == len(chapter.keywords)


def test_single_keyword_in_ten_keyword_chapter_is_in_scope() -> None:
    decision = classify_scope("What is a noun?", grammar_chapter())

    assert decision.in_scope is True
    assert decision.confidence == 1.0
    assert decision.matched_keywords == ("noun",)
    assert decision.reason == "matched keywords: noun"


def test_matching_is_case_insensitive() -> None:
    decision = classify_scope("Explain PARTS OF SPEECH please", grammar_chapter())

    assert decision.in_scope is True
    assert "parts of speech" in decision.matched_keywords


def test_low_match_ratio_is_out_of_scope_but_keeps_confidence() -> None:
    keywords = ["noun"] + [f"term{i}" for i in range(39)]
    chapter = _chapter_with_keywords(keywords)

    decision = classify_scope("is this a noun", chapter)

    assert decision.confidence == 0.25
    assert decision.in_scope is False
    assert decision.reason == "low keyword match: noun"


def test_blank_keywords_are_ignored() -> None:
    chapter = _chapter_with_keywords(["", "   ", "verb"])

    assert classify_scope("anything at all", chapter).in_scope is False
    assert classify_scope("a verb", chapter).in_scope is True


def test_keyword_confidence_formula() -> None:
    assert keyword_confidence(0, 10) == 0.0
    assert keyword_confidence(1, 5) == 1.0
    assert keyword_confidence(2, 40) == 0.5
    assert keyword_confidence(9, 40) == 1.0


def test_classifier_admission_requires_scope_and_threshold() -> None:
    classifier = ScopeClassifier(threshold=0.3)

    assert classifier.is_admitted(ScopeDecision(in_scope=True, confidence=0.3, reason="x")) is True
    assert classifier.is_admitted(ScopeDecision(in_scope=True, confidence=0.29, reason="x")) is False
    assert classifier.is_admitted(ScopeDecision(in_scope=False, confidence=1.0, reason="x")) is False
