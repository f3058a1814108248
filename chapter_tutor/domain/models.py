from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Difficulty = Literal["easy", "medium", "hard"]
SpeechQuality = Literal["standard", "hd"]
Role = Literal["user", "assistant", "system"]


class _StoredDocument(BaseModel):
    """Documents live in the store in camelCase; attributes stay snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ConceptSection(_StoredDocument):
    id: str
    title: str
    explanation: str
    key_points: list[str] = Field(default_factory=list)


class Example(_StoredDocument):
    id: str
    problem: str
    solution: str
    steps: list[str] = Field(default_factory=list)
    difficulty: Difficulty = "medium"


class PracticeProblem(_StoredDocument):
    id: str
    problem: str
    hint: str | None = None
    solution: str
    difficulty: Difficulty = "medium"


class ChapterContent(_StoredDocument):
    concepts: list[ConceptSection] = Field(default_factory=list)
    examples: list[Example] = Field(default_factory=list)
    practice_problems: list[PracticeProblem] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class ChapterMetadata(_StoredDocument):
    difficulty: Literal["beginner", "intermediate", "advanced"] = "beginner"
    prerequisites: list[str] = Field(default_factory=list)
    estimated_minutes: int = 0
    learning_objectives: list[str] = Field(default_factory=list)


class Chapter(_StoredDocument):
    """One curriculum unit. Read-only for the tutoring pipeline."""

    chapter_id: str
    subject: str
    grade: str
    title: str
    order: int
    content: ChapterContent = Field(default_factory=ChapterContent)
    metadata: ChapterMetadata = Field(default_factory=ChapterMetadata)
    cache_key: str = ""
    token_count: int = 0

    @property
    def keywords(self) -> list[str]:
        return self.content.keywords


@dataclass(frozen=True)
class ScopeDecision:
    in_scope: bool
    confidence: float
    reason: str
    matched_keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cached_input_tokens
            + self.cache_creation_tokens
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
        )


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str


@dataclass(frozen=True)
class GenerationResult:
    text: str
    usage: TokenUsage
    cost: float
    was_filtered: bool
    in_scope: bool
    scope_confidence: float
    off_topic_category: str | None = None


@dataclass(frozen=True)
class GenerationDelta:
    text_delta: str
    is_final: bool = False
    usage: TokenUsage | None = None
    was_filtered: bool = False


@dataclass(frozen=True)
class SynthesisResult:
    audio: bytes
    characters: int
    cost: float
    cached: bool


@dataclass(frozen=True)
class SentenceAudio:
    """One completed sentence of a streamed reply and its synthesis outcome."""

    index: int
    text: str
    result: SynthesisResult | None = None
    error: str | None = None

    @property
    def has_audio(self) -> bool:
        return self.result is not None and bool(self.result.audio)


@dataclass(frozen=True)
class SpeechCacheEntry:
    key: str
    text: str
    voice_id: str
    quality: SpeechQuality
    audio: bytes
    characters: int
    hit_count: int
    last_used: datetime
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Transcription:
    text: str
    duration_seconds: float
    language: str | None = None


@dataclass
class TurnCosts:
    transcription: float = 0.0
    generation: float = 0.0
    synthesis: float = 0.0

    @property
    def total(self) -> float:
        return self.transcription + self.generation + self.synthesis


@dataclass
class TurnUsage:
    """Mutable per-turn accumulator flushed into the session on completion or failure."""

    costs: TurnCosts = field(default_factory=TurnCosts)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    audio_seconds: float = 0.0
    synthesis_characters: int = 0
    synthesis_cache_hits: int = 0
    synthesis_cache_misses: int = 0

    def add_synthesis(self, result: SynthesisResult) -> None:
        self.costs.synthesis += result.cost
        self.synthesis_characters += result.characters
        if result.cached:
            self.synthesis_cache_hits += 1
        else:
            self.synthesis_cache_misses += 1

    @property
    def is_empty(self) -> bool:
        return (
            self.costs.total == 0
            and self.tokens.total_tokens == 0
            and self.audio_seconds == 0
            and self.synthesis_characters == 0
        )
