import pytest

from chapter_tutor.domain.models import TokenUsage
from chapter_tutor.domain.pricing import PricingPolicy


def test_generation_cost_prices_cached_input_at_the_discount_rate() -> None:
    pricing = PricingPolicy()
    usage = TokenUsage(input_tokens=1_000_000, output_tokens=0, cached_input_tokens=1_000_000)

    assert pricing.generation_cost(usage) == pytest.approx(3.0 + 0.30)


def test_cache_creation_tokens_cost_the_regular_input_rate() -> None:
    pricing = PricingPolicy()

    assert pricing.generation_cost(TokenUsage(cache_creation_tokens=500_000)) == pytest.approx(1.5)


def test_synthesis_cost_by_quality_and_cache() -> None:
    pricing = PricingPolicy()

    assert pricing.synthesis_cost(2000, "standard") == pytest.approx(0.03)
    assert pricing.synthesis_cost(2000, "hd") == pytest.approx(0.06)
    assert pricing.synthesis_cost(2000, "hd", cached=True) == 0.0


def test_transcription_cost_is_per_minute() -> None:
    pricing = PricingPolicy()

    assert pricing.transcription_cost(90) == pytest.approx(0.009)
    assert pricing.transcription_cost(0) == 0.0
