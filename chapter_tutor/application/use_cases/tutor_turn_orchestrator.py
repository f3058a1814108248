"""
Tutor turn orchestration.

One turn runs IDLE -> TRANSCRIBING (audio only) -> CLASSIFYING_SCOPE -> FILTERED | GENERATING
-> SYNTHESIZING -> FINALIZING -> DONE, or ERRORED from any non-terminal state. The streaming
variant publishes events on a TurnEventChannel; the non-streaming variant returns a
TurnOutcome and raises typed errors.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional

import structlog

from chapter_tutor.application.events import (
    AudioEvent,
    CompleteEvent,
    ErrorEvent,
    TextEvent,
    TurnEvent,
    TurnEventChannel,
)
from chapter_tutor.application.ports import TranscriptionPort
from chapter_tutor.application.services.curriculum_cache import CurriculumCache
from chapter_tutor.application.services.generation_service import GenerationService
from chapter_tutor.application.services.session_service import SessionService, SessionSnapshot
from chapter_tutor.application.services.speech_synthesis_service import SpeechSynthesisService
from chapter_tutor.core.observability.context_vars import bind_turn_context
from chapter_tutor.core.observability.timing import elapsed_ms, perf_now, to_iso, utc_now
from chapter_tutor.domain.exceptions import (
    ChapterNotFoundError,
    EmptyQuestionError,
    SynthesisFailedError,
    TranscriptionFailedError,
    TutorError,
)
from chapter_tutor.domain.models import (
    Chapter,
    GenerationResult,
    ScopeDecision,
    SpeechQuality,
    TokenUsage,
    TurnCosts,
    TurnUsage,
)
from chapter_tutor.domain.pricing import PricingPolicy
from chapter_tutor.domain.scope.classifier import ScopeClassifier

logger = structlog.get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Failed to process chat request"


class TurnState(str, Enum):
    IDLE = "idle"
    TRANSCRIBING = "transcribing"
    CLASSIFYING_SCOPE = "classifying_scope"
    FILTERED = "filtered"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


@dataclass(frozen=True)
class TurnCommand:
    chapter_id: str
    user_id: str
    message: Optional[str] = None
    audio: Optional[bytes] = None
    audio_filename: str = "audio.webm"
    session_id: Optional[str] = None
    voice_id: Optional[str] = None
    quality: Optional[SpeechQuality] = None


@dataclass(frozen=True)
class TurnOutcome:
    session_id: str
    message: str
    audio: Optional[bytes]
    in_scope: bool
    scope_confidence: float
    was_filtered: bool
    costs: TurnCosts
    tokens: TokenUsage
    latency_ms: int
    transcript: Optional[str] = None


class TurnCancelled(Exception):
    """The client stopped listening; no further paid calls are issued."""


@dataclass
class _TurnContext:
    command: TurnCommand
    started: float = field(default_factory=perf_now)
    state: TurnState = TurnState.IDLE
    usage: TurnUsage = field(default_factory=TurnUsage)
    chapter: Optional[Chapter] = None
    session: Optional[SessionSnapshot] = None
    question: str = ""
    transcript: Optional[str] = None
    scope: Optional[ScopeDecision] = None
    admitted: bool = False
    reply_parts: list[str] = field(default_factory=list)
    generation_latency_ms: int = 0
    synthesized_sentences: int = 0
    cached_sentences: int = 0

    @property
    def reply(self) -> str:
        return "".join(self.reply_parts).strip()


class TutorTurnOrchestrator:
    def __init__(
        self,
        curriculum: CurriculumCache,
        sessions: SessionService,
        classifier: ScopeClassifier,
        generation: GenerationService,
        synthesis: SpeechSynthesisService,
        transcription: TranscriptionPort,
        pricing: PricingPolicy,
    ):
        self._curriculum = curriculum
        self._sessions = sessions
        self._classifier = classifier
        self._generation = generation
        self._synthesis = synthesis
        self._transcription = transcription
        self._pricing = pricing

    async def stream(self, cmd: TurnCommand) -> AsyncIterator[TurnEvent]:
        """
        Runs the turn in a producer task and yields its events. Closing this iterator
        cancels the turn; costs already incurred are still flushed to the session.
        """
        channel = TurnEventChannel()
        task = asyncio.ensure_future(self._run_streaming(cmd, channel))
        try:
            async for event in channel:
                yield event
        finally:
            channel.cancel()
            if not task.done():
                await asyncio.shield(task)

    async def handle(self, cmd: TurnCommand) -> TurnOutcome:
        ctx = _TurnContext(command=cmd)
        try:
            await self._prepare(ctx)
            result = await self._generate_whole(ctx)

            audio: Optional[bytes] = None
            self._transition(ctx, TurnState.SYNTHESIZING)
            try:
                synthesis = await self._synthesis.synthesize(ctx.reply, cmd.voice_id, cmd.quality)
            except SynthesisFailedError as exc:
                logger.warning("reply_synthesis_failed", error=exc.message)
            else:
                ctx.usage.add_synthesis(synthesis)
                ctx.synthesized_sentences += 1
                ctx.cached_sentences += int(synthesis.cached)
                audio = synthesis.audio

            latency_ms = await self._finalize(ctx)
        except TutorError as exc:
            self._transition(ctx, TurnState.ERRORED, error=exc.code)
            await self._flush_partial(ctx)
            raise
        except Exception as exc:
            self._transition(ctx, TurnState.ERRORED, error=type(exc).__name__)
            await self._flush_partial(ctx)
            raise

        return TurnOutcome(
            session_id=ctx.session.session_id,
            message=ctx.reply,
            audio=audio,
            in_scope=ctx.scope.in_scope,
            scope_confidence=ctx.scope.confidence,
            was_filtered=result.was_filtered,
            costs=ctx.usage.costs,
            tokens=ctx.usage.tokens,
            latency_ms=latency_ms,
            transcript=ctx.transcript,
        )

    async def _run_streaming(self, cmd: TurnCommand, channel: TurnEventChannel) -> None:
        ctx = _TurnContext(command=cmd)
        try:
            await self._prepare(ctx)
            self._raise_if_cancelled(channel)

            if ctx.admitted:
                await self._stream_generated(ctx, channel)
            else:
                await self._stream_filtered(ctx, channel)
            self._raise_if_cancelled(channel)

            latency_ms = await self._finalize(ctx)
            channel.emit(
                CompleteEvent(
                    session_id=ctx.session.session_id,
                    costs=ctx.usage.costs,
                    tokens=ctx.usage.tokens,
                    latency_ms=latency_ms,
                    in_scope=ctx.scope.in_scope,
                    scope_confidence=ctx.scope.confidence,
                    was_filtered=not ctx.admitted,
                )
            )
        except TurnCancelled:
            logger.info("tutor_turn_cancelled", state=ctx.state.value)
            await self._flush_partial(ctx)
        except TutorError as exc:
            self._transition(ctx, TurnState.ERRORED, error=exc.code)
            await self._flush_partial(ctx)
            channel.emit(ErrorEvent(error=exc.message, code=exc.code))
        except Exception as exc:
            self._transition(ctx, TurnState.ERRORED, error=type(exc).__name__)
            logger.exception("tutor_turn_failed", error=str(exc))
            await self._flush_partial(ctx)
            channel.emit(ErrorEvent(error=GENERIC_FAILURE_MESSAGE, code="INTERNAL_ERROR"))
        finally:
            channel.close()

    async def _prepare(self, ctx: _TurnContext) -> None:
        cmd = ctx.command
        has_audio = bool(cmd.audio)
        if not has_audio and not str(cmd.message or "").strip():
            raise EmptyQuestionError()

        bind_turn_context(user_id=cmd.user_id, chapter_id=cmd.chapter_id)
        chapter = await self._curriculum.get(cmd.chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(details={"chapterId": cmd.chapter_id})
        ctx.chapter = chapter

        # Opened before any paid call so partial costs always have a session to land in.
        ctx.session = await self._sessions.open_session(
            cmd.user_id, chapter.chapter_id, session_id=cmd.session_id, subject=chapter.subject
        )
        bind_turn_context(session_id=ctx.session.session_id)

        if has_audio:
            self._transition(ctx, TurnState.TRANSCRIBING)
            ctx.question = await self._transcribe(ctx)
        else:
            ctx.question = str(cmd.message).strip()

        self._transition(ctx, TurnState.CLASSIFYING_SCOPE)
        ctx.scope = self._classifier.classify(ctx.question, chapter)
        ctx.admitted = self._generation.is_admitted(ctx.scope)
        logger.info(
            "scope_classified",
            in_scope=ctx.scope.in_scope,
            confidence=ctx.scope.confidence,
            reason=ctx.scope.reason,
            admitted=ctx.admitted,
        )

    async def _transcribe(self, ctx: _TurnContext) -> str:
        cmd = ctx.command
        try:
            transcription = await self._transcription.transcribe(cmd.audio, cmd.audio_filename)
        except TranscriptionFailedError:
            raise
        except Exception as exc:
            logger.error("transcription_backend_failed", error=str(exc))
            raise TranscriptionFailedError(details=str(exc)) from exc

        ctx.usage.audio_seconds += max(transcription.duration_seconds, 0.0)
        ctx.usage.costs.transcription += self._pricing.transcription_cost(transcription.duration_seconds)
        ctx.transcript = transcription.text
        question = str(transcription.text or "").strip()
        if not question:
            raise EmptyQuestionError("No speech detected in audio")
        return question

    def _recent_off_topic_count(self, ctx: _TurnContext) -> int:
        # Includes the question being answered now.
        return ctx.session.consecutive_off_topic + 1

    async def _generate_whole(self, ctx: _TurnContext) -> GenerationResult:
        self._transition(ctx, TurnState.GENERATING if ctx.admitted else TurnState.FILTERED)
        started = perf_now()
        result = await self._generation.generate(
            ctx.question,
            ctx.chapter,
            ctx.session.history,
            ctx.scope,
            recent_off_topic_count=self._recent_off_topic_count(ctx),
        )
        ctx.generation_latency_ms = elapsed_ms(started)
        ctx.usage.tokens = ctx.usage.tokens + result.usage
        ctx.usage.costs.generation += result.cost
        ctx.reply_parts = [result.text]
        return result

    async def _stream_filtered(self, ctx: _TurnContext, channel: TurnEventChannel) -> None:
        result = await self._generate_whole(ctx)
        channel.emit(TextEvent(data=result.text))

        self._raise_if_cancelled(channel)
        self._transition(ctx, TurnState.SYNTHESIZING)
        try:
            synthesis = await self._synthesis.synthesize(
                result.text, ctx.command.voice_id, ctx.command.quality
            )
        except SynthesisFailedError as exc:
            logger.warning("redirect_synthesis_failed", error=exc.message)
            return
        ctx.usage.add_synthesis(synthesis)
        ctx.synthesized_sentences += 1
        ctx.cached_sentences += int(synthesis.cached)
        self._raise_if_cancelled(channel)
        channel.emit(AudioEvent(audio=synthesis.audio, text=result.text))

    async def _stream_generated(self, ctx: _TurnContext, channel: TurnEventChannel) -> None:
        self._transition(ctx, TurnState.GENERATING)
        started = perf_now()

        async def fragments() -> AsyncIterator[str]:
            deltas = self._generation.generate_stream(
                ctx.question,
                ctx.chapter,
                ctx.session.history,
                ctx.scope,
                recent_off_topic_count=self._recent_off_topic_count(ctx),
            )
            async with aclosing(deltas):
                async for delta in deltas:
                    if delta.is_final:
                        # Usage was already recorded delta by delta; the final total repeats it.
                        ctx.generation_latency_ms = elapsed_ms(started)
                        continue
                    if delta.usage is not None:
                        ctx.usage.tokens = ctx.usage.tokens + delta.usage
                        ctx.usage.costs.generation += self._generation.cost_of(delta.usage)
                    self._raise_if_cancelled(channel)
                    if delta.text_delta:
                        ctx.reply_parts.append(delta.text_delta)
                        channel.emit(TextEvent(data=delta.text_delta))
                        yield delta.text_delta

        text_stream = fragments()
        sentences = self._synthesis.synthesize_stream(
            text_stream, ctx.command.voice_id, ctx.command.quality
        )
        async with aclosing(text_stream), aclosing(sentences):
            async for sentence in sentences:
                if sentence.has_audio:
                    ctx.usage.add_synthesis(sentence.result)
                    ctx.synthesized_sentences += 1
                    ctx.cached_sentences += int(sentence.result.cached)
                self._raise_if_cancelled(channel)
                if ctx.state is TurnState.GENERATING:
                    self._transition(ctx, TurnState.SYNTHESIZING)
                if sentence.has_audio:
                    channel.emit(AudioEvent(audio=sentence.result.audio, text=sentence.text))

    async def _finalize(self, ctx: _TurnContext) -> int:
        self._transition(ctx, TurnState.FINALIZING)
        latency_ms = elapsed_ms(ctx.started)
        off_topic = not ctx.admitted
        consecutive = ctx.session.consecutive_off_topic + 1 if off_topic else 0
        try:
            await self._sessions.record_turn(
                ctx.session.session_id,
                self._session_messages(ctx),
                ctx.usage,
                off_topic=off_topic,
                consecutive_off_topic=consecutive,
                latency_ms=latency_ms,
            )
            if ctx.admitted:
                await self._sessions.record_progress(ctx.command.user_id, ctx.chapter.chapter_id)
        except Exception as exc:
            # The reply was already delivered; bookkeeping is best-effort from here.
            logger.error("session_persist_failed", error=str(exc), exc_info=True)

        self._transition(ctx, TurnState.DONE, latency_ms=latency_ms, total_cost=ctx.usage.costs.total)
        return latency_ms

    async def _flush_partial(self, ctx: _TurnContext) -> None:
        if ctx.session is None or ctx.usage.is_empty:
            return
        try:
            await self._sessions.record_usage(ctx.session.session_id, ctx.usage)
            logger.info("partial_usage_flushed", total_cost=ctx.usage.costs.total)
        except Exception as exc:
            logger.error("partial_usage_flush_failed", error=str(exc))

    def _session_messages(self, ctx: _TurnContext) -> list[dict[str, Any]]:
        now = to_iso(utc_now())
        user_message: dict[str, Any] = {
            "role": "user",
            "content": ctx.question,
            "timestamp": now,
            "isInScope": ctx.scope.in_scope,
            "scopeConfidence": ctx.scope.confidence,
        }
        if ctx.command.audio:
            user_message["audioDurationMs"] = int(round(ctx.usage.audio_seconds * 1000))
        tokens = ctx.usage.tokens
        assistant_message: dict[str, Any] = {
            "role": "assistant",
            "content": ctx.reply,
            "timestamp": now,
            "tokensUsed": tokens.input_tokens + tokens.output_tokens,
            "cachedTokens": tokens.cached_input_tokens,
            "generationLatency": ctx.generation_latency_ms,
            "ttsCharacters": ctx.usage.synthesis_characters,
            "ttsCached": ctx.synthesized_sentences > 0
            and ctx.cached_sentences == ctx.synthesized_sentences,
            "wasFiltered": not ctx.admitted,
        }
        return [user_message, assistant_message]

    @staticmethod
    def _raise_if_cancelled(channel: TurnEventChannel) -> None:
        if channel.cancelled:
            raise TurnCancelled()

    @staticmethod
    def _transition(ctx: _TurnContext, state: TurnState, **fields: Any) -> None:
        logger.info("tutor_turn_state", previous=ctx.state.value, state=state.value, **fields)
        ctx.state = state
