from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import AsyncIterable, AsyncIterator, Iterable, Optional

import structlog

from chapter_tutor.application.ports import SpeechBackendPort
from chapter_tutor.application.services.speech_cache import SpeechCache, speech_cache_key
from chapter_tutor.core.observability.timing import elapsed_ms, perf_now
from chapter_tutor.domain.exceptions import SynthesisFailedError
from chapter_tutor.domain.models import SentenceAudio, SpeechQuality, SynthesisResult
from chapter_tutor.domain.pricing import PricingPolicy
from chapter_tutor.domain.speech.segmentation import SentenceBuffer, normalize_text, split_into_sentences

logger = structlog.get_logger(__name__)

COMMON_TUTOR_PHRASES = (
    "Great question!",
    "Let me explain that.",
    "That's correct!",
    "Not quite. Let's try again.",
    "Can you tell me more about what you're confused about?",
    "Let's break this down step by step.",
    "Excellent work!",
    "Do you have any other questions?",
)


@dataclass
class _StreamState:
    index: int = 0
    consecutive_failures: int = 0
    disabled: bool = False


class SpeechSynthesisService:
    """Speech backend behind the speech cache, with sentence-wise streaming."""

    def __init__(
        self,
        backend: SpeechBackendPort,
        cache: SpeechCache,
        pricing: PricingPolicy,
        default_voice: str = "alloy",
        default_quality: SpeechQuality = "standard",
        max_consecutive_failures: int = 3,
    ):
        self._backend = backend
        self._cache = cache
        self._pricing = pricing
        self.default_voice = default_voice
        self.default_quality = default_quality
        self._max_consecutive_failures = max(1, max_consecutive_failures)
        self._inflight: dict[str, asyncio.Future[SynthesisResult]] = {}

    split_into_sentences = staticmethod(split_into_sentences)

    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        quality: Optional[SpeechQuality] = None,
    ) -> SynthesisResult:
        voice = voice_id or self.default_voice
        tier: SpeechQuality = quality or self.default_quality
        clean = normalize_text(text)
        if not clean:
            raise SynthesisFailedError("Nothing to synthesize")

        key = speech_cache_key(clean, voice, tier)
        task = self._inflight.get(key)
        owner = task is None
        if task is None:
            task = asyncio.ensure_future(self._resolve(clean, voice, tier))
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))

        result = await asyncio.shield(task)
        if not owner:
            # The owner already paid for this audio.
            return replace(result, cost=0.0, cached=True)
        return result

    async def synthesize_stream(
        self,
        fragments: AsyncIterable[str],
        voice_id: Optional[str] = None,
        quality: Optional[SpeechQuality] = None,
    ) -> AsyncIterator[SentenceAudio]:
        """
        Consumes streamed text and yields one SentenceAudio per completed sentence, in
        order. A failed sentence is yielded with its error; after too many consecutive
        failures the remaining sentences are yielded without audio.
        """
        buffer = SentenceBuffer()
        state = _StreamState()
        async for fragment in fragments:
            for sentence in buffer.feed(fragment):
                yield await self._synthesize_sentence(sentence, state, voice_id, quality)
        for sentence in buffer.flush():
            yield await self._synthesize_sentence(sentence, state, voice_id, quality)

    async def precache_phrases(
        self,
        phrases: Iterable[str] = COMMON_TUTOR_PHRASES,
        voice_id: Optional[str] = None,
        quality: Optional[SpeechQuality] = None,
    ) -> dict[str, int]:
        summary = {"cached": 0, "synthesized": 0, "failed": 0}
        for phrase in phrases:
            try:
                result = await self.synthesize(phrase, voice_id=voice_id, quality=quality)
            except SynthesisFailedError as exc:
                logger.warning("speech_precache_failed", phrase=phrase, error=exc.message)
                summary["failed"] += 1
                continue
            summary["cached" if result.cached else "synthesized"] += 1
        logger.info("speech_precache_done", **summary)
        return summary

    async def _synthesize_sentence(
        self,
        sentence: str,
        state: _StreamState,
        voice_id: Optional[str],
        quality: Optional[SpeechQuality],
    ) -> SentenceAudio:
        index = state.index
        state.index += 1
        if state.disabled:
            return SentenceAudio(index=index, text=sentence, error="synthesis disabled")
        try:
            result = await self.synthesize(sentence, voice_id=voice_id, quality=quality)
        except SynthesisFailedError as exc:
            state.consecutive_failures += 1
            logger.warning(
                "sentence_synthesis_failed",
                sentence_index=index,
                consecutive_failures=state.consecutive_failures,
                error=exc.message,
            )
            if state.consecutive_failures >= self._max_consecutive_failures:
                state.disabled = True
                logger.error("sentence_synthesis_disabled", after_failures=state.consecutive_failures)
            return SentenceAudio(index=index, text=sentence, error=exc.message)
        state.consecutive_failures = 0
        return SentenceAudio(index=index, text=sentence, result=result)

    async def _resolve(self, text: str, voice: str, quality: SpeechQuality) -> SynthesisResult:
        entry = await self._cache.lookup(text, voice, quality)
        if entry is not None:
            return SynthesisResult(audio=entry.audio, characters=len(text), cost=0.0, cached=True)

        started = perf_now()
        try:
            audio = await self._backend.synthesize(text, voice, quality)
        except SynthesisFailedError:
            raise
        except Exception as exc:
            logger.error("speech_backend_failed", voice_id=voice, quality=quality, error=str(exc))
            raise SynthesisFailedError(details=str(exc)) from exc
        if not audio:
            raise SynthesisFailedError(details="speech backend returned no audio")

        characters = len(text)
        logger.info(
            "speech_synthesized",
            characters=characters,
            voice_id=voice,
            quality=quality,
            duration_ms=elapsed_ms(started),
        )
        await self._cache.store(text, voice, quality, audio, characters)
        return SynthesisResult(
            audio=audio,
            characters=characters,
            cost=self._pricing.synthesis_cost(characters, quality),
            cached=False,
        )

    def _forget(self, key: str, done: asyncio.Future) -> None:
        if self._inflight.get(key) is done:
            self._inflight.pop(key, None)
        if not done.cancelled():
            # Mark the outcome as observed even when every waiter has gone away.
            done.exception()
