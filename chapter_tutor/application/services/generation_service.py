from __future__ import annotations

from typing import AsyncIterator, Sequence

import structlog

from chapter_tutor.application.ports import LanguageModelPort, LanguageModelRequest
from chapter_tutor.core.observability.timing import elapsed_ms, perf_now
from chapter_tutor.domain.exceptions import GenerationFailedError
from chapter_tutor.domain.models import (
    Chapter,
    ConversationTurn,
    GenerationDelta,
    GenerationResult,
    ScopeDecision,
    TokenUsage,
)
from chapter_tutor.domain.pricing import PricingPolicy
from chapter_tutor.domain.prompts.tutor import build_tutor_instruction
from chapter_tutor.domain.scope.classifier import ScopeClassifier
from chapter_tutor.domain.scope.off_topic import OffTopicResponse, OffTopicResponseGenerator

logger = structlog.get_logger(__name__)


class GenerationService:
    """
    Chapter-grounded tutor replies with admission control.

    Questions that fail the scope check are answered from the off-topic templates and
    never reach the language model.
    """

    def __init__(
        self,
        language_model: LanguageModelPort,
        pricing: PricingPolicy,
        classifier: ScopeClassifier,
        off_topic: OffTopicResponseGenerator,
        cache_system: bool = True,
    ):
        self._llm = language_model
        self._pricing = pricing
        self._classifier = classifier
        self._off_topic = off_topic
        self._cache_system = cache_system

    def is_admitted(self, scope: ScopeDecision) -> bool:
        return self._classifier.is_admitted(scope)

    def cost_of(self, usage: TokenUsage) -> float:
        return self._pricing.generation_cost(usage)

    def redirect(self, question: str, chapter: Chapter, recent_off_topic_count: int) -> OffTopicResponse:
        return self._off_topic.select(
            question,
            chapter.title,
            recent_off_topic_count,
            subject=chapter.subject,
        )

    def build_request(
        self,
        question: str,
        chapter: Chapter,
        history: Sequence[ConversationTurn] = (),
    ) -> LanguageModelRequest:
        return LanguageModelRequest(
            system_instruction=build_tutor_instruction(chapter),
            history=tuple(turn for turn in history if turn.role in {"user", "assistant"} and turn.content),
            question=question,
            cache_system=self._cache_system,
        )

    async def generate(
        self,
        question: str,
        chapter: Chapter,
        history: Sequence[ConversationTurn],
        scope: ScopeDecision,
        recent_off_topic_count: int = 0,
    ) -> GenerationResult:
        if not self.is_admitted(scope):
            return self._filtered_result(question, chapter, scope, recent_off_topic_count)

        request = self.build_request(question, chapter, history)
        started = perf_now()
        try:
            completion = await self._llm.complete(request)
        except GenerationFailedError:
            raise
        except Exception as exc:
            logger.error("generation_backend_failed", chapter_id=chapter.chapter_id, error=str(exc))
            raise GenerationFailedError(details=str(exc)) from exc

        text = str(completion.text or "").strip()
        if not text:
            raise GenerationFailedError(details="language model returned an empty response")

        cost = self.cost_of(completion.usage)
        logger.info(
            "generation_completed",
            chapter_id=chapter.chapter_id,
            input_tokens=completion.usage.input_tokens,
            cached_input_tokens=completion.usage.cached_input_tokens,
            output_tokens=completion.usage.output_tokens,
            cost=cost,
            duration_ms=elapsed_ms(started),
        )
        return GenerationResult(
            text=text,
            usage=completion.usage,
            cost=cost,
            was_filtered=False,
            in_scope=scope.in_scope,
            scope_confidence=scope.confidence,
        )

    async def generate_stream(
        self,
        question: str,
        chapter: Chapter,
        history: Sequence[ConversationTurn],
        scope: ScopeDecision,
        recent_off_topic_count: int = 0,
    ) -> AsyncIterator[GenerationDelta]:
        """
        Yields text deltas, plus a usage-only delta whenever the provider reports tokens so an
        interrupted stream is still billed. The last delta is final and carries the cumulative usage.
        """
        if not self.is_admitted(scope):
            filtered = self._filtered_result(question, chapter, scope, recent_off_topic_count)
            yield GenerationDelta(
                text_delta=filtered.text,
                is_final=True,
                usage=filtered.usage,
                was_filtered=True,
            )
            return

        request = self.build_request(question, chapter, history)
        usage = TokenUsage()
        produced_text = False
        started = perf_now()
        try:
            async for chunk in self._llm.stream(request):
                if chunk.usage is not None:
                    usage = usage + chunk.usage
                    yield GenerationDelta(text_delta="", usage=chunk.usage)
                if chunk.text:
                    produced_text = produced_text or bool(chunk.text.strip())
                    yield GenerationDelta(text_delta=chunk.text)
        except GenerationFailedError:
            raise
        except Exception as exc:
            logger.error("generation_stream_failed", chapter_id=chapter.chapter_id, error=str(exc))
            raise GenerationFailedError(details=str(exc)) from exc

        if not produced_text:
            raise GenerationFailedError(details="language model stream produced no text")

        logger.info(
            "generation_stream_completed",
            chapter_id=chapter.chapter_id,
            input_tokens=usage.input_tokens,
            cached_input_tokens=usage.cached_input_tokens,
            output_tokens=usage.output_tokens,
            cost=self.cost_of(usage),
            duration_ms=elapsed_ms(started),
        )
        yield GenerationDelta(text_delta="", is_final=True, usage=usage)

    def _filtered_result(
        self,
        question: str,
        chapter: Chapter,
        scope: ScopeDecision,
        recent_off_topic_count: int,
    ) -> GenerationResult:
        response = self.redirect(question, chapter, recent_off_topic_count)
        logger.info(
            "generation_filtered",
            chapter_id=chapter.chapter_id,
            category=response.category.value,
            scope_confidence=scope.confidence,
            reason=scope.reason,
        )
        return GenerationResult(
            text=response.text,
            usage=TokenUsage(),
            cost=0.0,
            was_filtered=True,
            in_scope=scope.in_scope,
            scope_confidence=scope.confidence,
            off_topic_category=response.category.value,
        )
