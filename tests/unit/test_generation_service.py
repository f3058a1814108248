import asyncio

import pytest

from chapter_tutor.application.services.generation_service import GenerationService
from chapter_tutor.domain.exceptions import GenerationFailedError
from chapter_tutor.domain.models import ConversationTurn, ScopeDecision, TokenUsage
from chapter_tutor.domain.pricing import PricingPolicy
from chapter_tutor.domain.scope.classifier import ScopeClassifier, classify_scope
from chapter_tutor.domain.scope.off_topic import OffTopicResponseGenerator
from tests.fakes import GRAMMAR_CHAPTER_TITLE, FakeLanguageModel, grammar_chapter


def _service(llm: FakeLanguageModel, cache_system: bool = True) -> GenerationService:
    return GenerationService(
        language_model=llm,
        pricing=PricingPolicy(),
        classifier=ScopeClassifier(threshold=0.3),
        off_topic=OffTopicResponseGenerator(),
        cache_system=cache_system,
    )


def test_out_of_scope_question_never_reaches_the_model() -> None:
    llm = FakeLanguageModel()
    service = _service(llm)
    chapter = grammar_chapter()
    question = "What's the capital of France?"

    result = asyncio.run(service.generate(question, chapter, (), classify_scope(question, chapter)))

    assert llm.calls == 0
    assert result.was_filtered is True
    assert result.cost == 0.0
    assert result.usage == TokenUsage()
    assert GRAMMAR_CHAPTER_TITLE in result.text
    assert result.off_topic_category == "way_off_topic"


def test_in_scope_but_low_confidence_is_filtered() -> None:
    llm = FakeLanguageModel()
    service = _service(llm)
    scope = ScopeDecision(in_scope=True, confidence=0.2, reason="matched keywords: noun")

    result = asyncio.run(service.generate("noun?", grammar_chapter(), (), scope))

    assert llm.calls == 0
    assert result.was_filtered is True
    assert result.in_scope is True


def test_admitted_question_is_answered_and_priced() -> None:
    llm = FakeLanguageModel(usage=TokenUsage(input_tokens=40, output_tokens=20, cached_input_tokens=900))
    service = _service(llm)
    chapter = grammar_chapter()
    history = (
        ConversationTurn(role="user", content="Hi"),
        ConversationTurn(role="assistant", content="Hello! Ready to learn?"),
    )
    question = "What is a noun?"

    result = asyncio.run(service.generate(question, chapter, history, classify_scope(question, chapter)))

    assert llm.complete_calls == 1
    assert result.was_filtered is False
    assert result.text == "A noun is a naming word. For example, dog is a noun."
    assert result.cost == pytest.approx((40 * 3 + 900 * 0.30 + 20 * 15) / 1_000_000)
    request = llm.requests[0]
    assert request.cache_system is True
    assert request.question == question
    assert request.history == history
    assert GRAMMAR_CHAPTER_TITLE in request.system_instruction
    assert "Nouns" in request.system_instruction


def test_prompt_caching_flag_is_passed_through() -> None:
    llm = FakeLanguageModel()
    service = _service(llm, cache_system=False)
    chapter = grammar_chapter()

    asyncio.run(service.generate("What is a verb?", chapter, (), classify_scope("What is a verb?", chapter)))

    assert llm.requests[0].cache_system is False


def test_stream_yields_deltas_then_final_usage() -> None:
    llm = FakeLanguageModel(chunks=["Verbs ", "show action."])
    service = _service(llm)
    chapter = grammar_chapter()
    scope = classify_scope("What is a verb?", chapter)

    async def _run():
        return [delta async for delta in service.generate_stream("What is a verb?", chapter, (), scope)]

    deltas = asyncio.run(_run())

    assert [d.text_delta for d in deltas[:-1] if d.text_delta] == ["Verbs ", "show action."]
    assert deltas[-1].is_final is True
    assert deltas[-1].usage == llm.usage
    assert not any(d.is_final for d in deltas[:-1])


def test_stream_reports_prompt_usage_before_any_text() -> None:
    llm = FakeLanguageModel(chunks=["Verbs ", "show action."])
    service = _service(llm)
    chapter = grammar_chapter()
    scope = classify_scope("What is a verb?", chapter)

    async def _run():
        return [delta async for delta in service.generate_stream("What is a verb?", chapter, (), scope)]

    deltas = asyncio.run(_run())

    assert deltas[0].text_delta == ""
    assert deltas[0].usage == TokenUsage(input_tokens=40, cached_input_tokens=900)
    incremental = [d.usage for d in deltas[:-1] if d.usage is not None]
    assert sum(incremental, TokenUsage()) == deltas[-1].usage


def test_filtered_stream_is_a_single_final_delta() -> None:
    llm = FakeLanguageModel()
    service = _service(llm)
    chapter = grammar_chapter()
    scope = classify_scope("Who won the football game?", chapter)

    async def _run():
        return [delta async for delta in service.generate_stream("Who won the football game?", chapter, (), scope)]

    deltas = asyncio.run(_run())

    assert len(deltas) == 1
    assert deltas[0].is_final and deltas[0].was_filtered
    assert GRAMMAR_CHAPTER_TITLE in deltas[0].text_delta
    assert llm.calls == 0


def test_backend_errors_become_generation_failed_without_retry() -> None:
    llm = FakeLanguageModel(fail_with=RuntimeError("overloaded"))
    service = _service(llm)
    chapter = grammar_chapter()
    scope = classify_scope("What is a noun?", chapter)

    with pytest.raises(GenerationFailedError):
        asyncio.run(service.generate("What is a noun?", chapter, (), scope))
    assert llm.complete_calls == 1

    async def _consume():
        return [delta async for delta in service.generate_stream("What is a noun?", chapter, (), scope)]

    with pytest.raises(GenerationFailedError):
        asyncio.run(_consume())
    assert llm.stream_calls == 1


def test_empty_model_output_is_a_failure() -> None:
    llm = FakeLanguageModel(chunks=["   "])
    service = _service(llm)
    chapter = grammar_chapter()
    scope = classify_scope("What is a noun?", chapter)

    with pytest.raises(GenerationFailedError):
        asyncio.run(service.generate("What is a noun?", chapter, (), scope))
