from __future__ import annotations

from dataclasses import dataclass

from chapter_tutor.domain.models import SpeechQuality, TokenUsage


@dataclass(frozen=True)
class PricingPolicy:
    """USD rates for the paid backends."""

    input_per_mtok: float = 3.0
    cached_input_per_mtok: float = 0.30
    output_per_mtok: float = 15.0
    tts_standard_per_1k_chars: float = 0.015
    tts_hd_per_1k_chars: float = 0.030
    transcription_per_minute: float = 0.006

    @classmethod
    def from_settings(cls, settings) -> "PricingPolicy":
        return cls(
            input_per_mtok=settings.LLM_INPUT_COST_PER_MTOK,
            cached_input_per_mtok=settings.LLM_CACHED_INPUT_COST_PER_MTOK,
            output_per_mtok=settings.LLM_OUTPUT_COST_PER_MTOK,
            tts_standard_per_1k_chars=settings.TTS_STANDARD_COST_PER_1K_CHARS,
            tts_hd_per_1k_chars=settings.TTS_HD_COST_PER_1K_CHARS,
            transcription_per_minute=settings.WHISPER_COST_PER_MINUTE,
        )

    def generation_cost(self, usage: TokenUsage) -> float:
        # Cache-creation tokens are billed at the regular input rate.
        regular_input = usage.input_tokens + usage.cache_creation_tokens
        return (
            regular_input * self.input_per_mtok
            + usage.cached_input_tokens * self.cached_input_per_mtok
            + usage.output_tokens * self.output_per_mtok
        ) / 1_000_000

    def synthesis_cost(self, characters: int, quality: SpeechQuality, cached: bool = False) -> float:
        if cached or characters <= 0:
            return 0.0
        rate = self.tts_hd_per_1k_chars if quality == "hd" else self.tts_standard_per_1k_chars
        return characters / 1000 * rate

    def transcription_cost(self, duration_seconds: float) -> float:
        if duration_seconds <= 0:
            return 0.0
        return duration_seconds / 60 * self.transcription_per_minute
