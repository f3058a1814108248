"""
Tutor Container - Infrastructure Layer

Builds the tutoring services once per application and owns the caches.
"""

from typing import Optional

import structlog

from chapter_tutor.application.ports import (
    DocumentStorePort,
    LanguageModelPort,
    SpeechBackendPort,
    TranscriptionPort,
)
from chapter_tutor.application.services.curriculum_cache import CurriculumCache
from chapter_tutor.application.services.generation_service import GenerationService
from chapter_tutor.application.services.session_service import SessionService
from chapter_tutor.application.services.speech_cache import SpeechCache
from chapter_tutor.application.services.speech_synthesis_service import SpeechSynthesisService
from chapter_tutor.application.use_cases.tutor_turn_orchestrator import TutorTurnOrchestrator
from chapter_tutor.core.settings import Settings, settings as default_settings
from chapter_tutor.domain.pricing import PricingPolicy
from chapter_tutor.domain.scope.classifier import ScopeClassifier
from chapter_tutor.domain.scope.off_topic import OffTopicResponseGenerator

logger = structlog.get_logger(__name__)


class TutorContainer:
    """
    IoC container for the tutoring pipeline. Collaborators can be injected; anything
    not injected is built lazily from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        document_store: Optional[DocumentStorePort] = None,
        language_model: Optional[LanguageModelPort] = None,
        speech_backend: Optional[SpeechBackendPort] = None,
        transcriber: Optional[TranscriptionPort] = None,
    ):
        self.settings = settings or default_settings
        self._document_store = document_store
        self._language_model = language_model
        self._speech_backend = speech_backend
        self._transcriber = transcriber
        self._pricing = None
        self._classifier = None
        self._curriculum_cache = None
        self._speech_cache = None
        self._synthesis_service = None
        self._generation_service = None
        self._session_service = None
        self._orchestrator = None

    @property
    def document_store(self) -> DocumentStorePort:
        if self._document_store is None:
            if self.settings.DOCUMENT_STORE_BACKEND == "supabase":
                from chapter_tutor.infrastructure.supabase.document_store import SupabaseDocumentStore

                self._document_store = SupabaseDocumentStore(
                    table=self.settings.SUPABASE_DOCUMENTS_TABLE,
                    max_retries=self.settings.STORE_TRANSIENT_MAX_RETRIES,
                    base_delay_seconds=self.settings.STORE_TRANSIENT_BASE_DELAY_SECONDS,
                )
            else:
                from chapter_tutor.infrastructure.stores.memory_document_store import InMemoryDocumentStore

                self._document_store = InMemoryDocumentStore()
        return self._document_store

    @property
    def language_model(self) -> LanguageModelPort:
        if self._language_model is None:
            from chapter_tutor.infrastructure.ai.anthropic_language_model import AnthropicLanguageModel

            self._language_model = AnthropicLanguageModel()
        return self._language_model

    @property
    def speech_backend(self) -> SpeechBackendPort:
        if self._speech_backend is None:
            from chapter_tutor.infrastructure.ai.openai_audio import OpenAISpeechBackend

            self._speech_backend = OpenAISpeechBackend(
                standard_model=self.settings.TTS_MODEL_STANDARD,
                hd_model=self.settings.TTS_MODEL_HD,
                speed=self.settings.TTS_SPEED,
            )
        return self._speech_backend

    @property
    def transcriber(self) -> TranscriptionPort:
        if self._transcriber is None:
            from chapter_tutor.infrastructure.ai.openai_audio import OpenAITranscriber

            self._transcriber = OpenAITranscriber(
                model=self.settings.WHISPER_MODEL,
                language=self.settings.WHISPER_LANGUAGE,
            )
        return self._transcriber

    @property
    def pricing(self) -> PricingPolicy:
        if self._pricing is None:
            self._pricing = PricingPolicy.from_settings(self.settings)
        return self._pricing

    @property
    def classifier(self) -> ScopeClassifier:
        if self._classifier is None:
            self._classifier = ScopeClassifier(threshold=self.settings.SCOPE_CONFIDENCE_THRESHOLD)
        return self._classifier

    @property
    def curriculum_cache(self) -> CurriculumCache:
        if self._curriculum_cache is None:
            self._curriculum_cache = CurriculumCache(
                self.document_store, ttl_seconds=self.settings.CHAPTER_CACHE_TTL_SECONDS
            )
        return self._curriculum_cache

    @property
    def speech_cache(self) -> SpeechCache:
        if self._speech_cache is None:
            self._speech_cache = SpeechCache(
                self.document_store,
                ttl_days=self.settings.TTS_CACHE_TTL_DAYS,
                enabled=self.settings.ENABLE_TTS_CACHING,
            )
        return self._speech_cache

    @property
    def synthesis_service(self) -> SpeechSynthesisService:
        if self._synthesis_service is None:
            self._synthesis_service = SpeechSynthesisService(
                backend=self.speech_backend,
                cache=self.speech_cache,
                pricing=self.pricing,
                default_voice=self.settings.TTS_DEFAULT_VOICE,
                default_quality=self.settings.TTS_DEFAULT_QUALITY,
                max_consecutive_failures=self.settings.SYNTHESIS_MAX_CONSECUTIVE_FAILURES,
            )
        return self._synthesis_service

    @property
    def generation_service(self) -> GenerationService:
        if self._generation_service is None:
            self._generation_service = GenerationService(
                language_model=self.language_model,
                pricing=self.pricing,
                classifier=self.classifier,
                off_topic=OffTopicResponseGenerator(
                    repeat_threshold=self.settings.OFF_TOPIC_REPEAT_THRESHOLD,
                    escalation_threshold=self.settings.OFF_TOPIC_ESCALATION_THRESHOLD,
                ),
                cache_system=self.settings.ENABLE_PROMPT_CACHING,
            )
        return self._generation_service

    @property
    def session_service(self) -> SessionService:
        if self._session_service is None:
            self._session_service = SessionService(self.document_store)
        return self._session_service

    @property
    def orchestrator(self) -> TutorTurnOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = TutorTurnOrchestrator(
                curriculum=self.curriculum_cache,
                sessions=self.session_service,
                classifier=self.classifier,
                generation=self.generation_service,
                synthesis=self.synthesis_service,
                transcription=self.transcriber,
                pricing=self.pricing,
            )
        return self._orchestrator

    async def startup(self) -> None:
        _ = self.orchestrator
        logger.info(
            "tutor_container_started",
            document_store=type(self.document_store).__name__,
            prompt_caching=self.settings.ENABLE_PROMPT_CACHING,
            tts_caching=self.settings.ENABLE_TTS_CACHING,
        )

    async def shutdown(self) -> None:
        if self._curriculum_cache is not None:
            self._curriculum_cache.clear()
        close = getattr(self._document_store, "close", None)
        if close is not None:
            await close()
