import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


PROJECT_ROOT = Path(__file__).resolve().parents[2]
ROOT_ENV = PROJECT_ROOT / ".env"
ROOT_ENV_LOCAL = PROJECT_ROOT / ".env.local"


class Settings(BaseSettings):
    """
    Chapter Tutor - Global Configuration Registry
    Centralizes all environment variables using Pydantic Settings.
    """

    model_config = SettingsConfigDict(
        env_file=(str(ROOT_ENV), str(ROOT_ENV_LOCAL)),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Infrastructure
    DOCUMENT_STORE_BACKEND: Literal["memory", "supabase"] = "memory"
    SUPABASE_URL: Optional[str] = Field(
        None, validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL")
    )
    SUPABASE_SERVICE_KEY: Optional[str] = Field(
        None, validation_alias=AliasChoices("SUPABASE_SERVICE_KEY", "SUPABASE_SERVICE_ROLE_KEY")
    )
    SUPABASE_DOCUMENTS_TABLE: str = "tutor_documents"
    STORE_TRANSIENT_MAX_RETRIES: int = 3
    STORE_TRANSIENT_BASE_DELAY_SECONDS: float = 0.4

    # Security
    TUTOR_SERVICE_SECRET: str = "development-secret"
    DEFAULT_LOCAL_USER_ID: str = "local-student"

    # Language model
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"
    ANTHROPIC_MAX_TOKENS: int = 2048
    ANTHROPIC_TEMPERATURE: float = 0.7
    ENABLE_PROMPT_CACHING: bool = True

    # Speech
    OPENAI_API_KEY: Optional[str] = None
    WHISPER_MODEL: str = "whisper-1"
    WHISPER_LANGUAGE: str = "en"
    TTS_MODEL_STANDARD: str = "tts-1"
    TTS_MODEL_HD: str = "tts-1-hd"
    TTS_DEFAULT_VOICE: str = "alloy"
    TTS_DEFAULT_QUALITY: Literal["standard", "hd"] = "standard"
    TTS_SPEED: float = 1.0
    ENABLE_TTS_CACHING: bool = True
    TTS_CACHE_TTL_DAYS: int = 30
    SYNTHESIS_MAX_CONSECUTIVE_FAILURES: int = 3

    # Caches
    CHAPTER_CACHE_TTL_SECONDS: int = 3600

    # Scope policy
    SCOPE_CONFIDENCE_THRESHOLD: float = 0.3
    OFF_TOPIC_REPEAT_THRESHOLD: int = 2
    OFF_TOPIC_ESCALATION_THRESHOLD: int = 3

    # Pricing (USD)
    LLM_INPUT_COST_PER_MTOK: float = 3.0
    LLM_CACHED_INPUT_COST_PER_MTOK: float = 0.30
    LLM_OUTPUT_COST_PER_MTOK: float = 15.0
    TTS_STANDARD_COST_PER_1K_CHARS: float = 0.015
    TTS_HD_COST_PER_1K_CHARS: float = 0.030
    WHISPER_COST_PER_MINUTE: float = 0.006

    # API Config
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    APP_ENV: str = "local"
    RUNNING_IN_DOCKER: bool = False

    @field_validator("APP_ENV", "ENVIRONMENT", mode="before")
    @classmethod
    def _normalize_environment_labels(cls, value: str | None) -> str:
        return str(value or "").strip().lower()

    @field_validator("TTS_DEFAULT_QUALITY", "DOCUMENT_STORE_BACKEND", mode="before")
    @classmethod
    def _normalize_choice(cls, value: str | None) -> str:
        return str(value or "").strip().lower()

    @property
    def is_deployed_environment(self) -> bool:
        app_env = self.APP_ENV or self.ENVIRONMENT
        if app_env in {"staging", "production", "prod"}:
            return True
        return bool(self.RUNNING_IN_DOCKER and app_env not in {"", "local", "development", "dev"})

    @model_validator(mode="after")
    def _enforce_policy_bounds(self) -> "Settings":
        if not 0.0 <= self.SCOPE_CONFIDENCE_THRESHOLD <= 1.0:
            logger.warning(
                "SCOPE_CONFIDENCE_THRESHOLD outside [0, 1]; clamping",
                extra={"value": self.SCOPE_CONFIDENCE_THRESHOLD},
            )
            self.SCOPE_CONFIDENCE_THRESHOLD = min(max(self.SCOPE_CONFIDENCE_THRESHOLD, 0.0), 1.0)
        if self.DOCUMENT_STORE_BACKEND == "supabase" and not (
            self.SUPABASE_URL and self.SUPABASE_SERVICE_KEY
        ):
            logger.warning(
                "DOCUMENT_STORE_BACKEND=supabase without credentials; client creation will fail",
                extra={"app_env": self.APP_ENV},
            )
        self.SYNTHESIS_MAX_CONSECUTIVE_FAILURES = max(1, int(self.SYNTHESIS_MAX_CONSECUTIVE_FAILURES))
        return self


settings = Settings()  # type: ignore[call-arg]
