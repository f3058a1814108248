from __future__ import annotations

from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chapter_tutor.api.dependencies import get_curriculum_cache, get_speech_cache, get_synthesis_service
from chapter_tutor.api.v1.auth import require_service_auth
from chapter_tutor.api.v1.errors import ERROR_RESPONSES, ApiError
from chapter_tutor.application.services.curriculum_cache import CurriculumCache
from chapter_tutor.application.services.speech_cache import SpeechCache
from chapter_tutor.application.services.speech_synthesis_service import (
    COMMON_TUTOR_PHRASES,
    SpeechSynthesisService,
)
from chapter_tutor.domain.exceptions import CacheUnavailableError

logger = structlog.get_logger(__name__)
router = APIRouter(
    prefix="/cache",
    tags=["cache"],
    dependencies=[Depends(require_service_auth)],
    responses={code: ERROR_RESPONSES[code] for code in (401, 500, 503)},
)


class ChapterCacheClearRequest(BaseModel):
    chapter_id: Optional[str] = Field(default=None, description="Only drop this chapter when set.")


class CacheMaintenanceResponse(BaseModel):
    cache: str
    action: str
    affected: int


class PrecacheRequest(BaseModel):
    phrases: list[str] = Field(default_factory=lambda: list(COMMON_TUTOR_PHRASES), max_length=200)
    voice_id: Optional[str] = None
    quality: Optional[Literal["standard", "hd"]] = None

    model_config = {
        "json_schema_extra": {
            "example": {"phrases": ["Great question!", "Let's break this down step by step."], "quality": "standard"}
        }
    }


class PrecacheResponse(BaseModel):
    cached: int
    synthesized: int
    failed: int


@router.post("/chapters/clear", response_model=CacheMaintenanceResponse)
async def clear_chapter_cache(
    request: ChapterCacheClearRequest | None = None,
    cache: CurriculumCache = Depends(get_curriculum_cache),
):
    if request is not None and request.chapter_id:
        cache.invalidate(request.chapter_id)
        return CacheMaintenanceResponse(cache="chapters", action="invalidate", affected=1)
    evicted = cache.clear()
    return CacheMaintenanceResponse(cache="chapters", action="clear", affected=evicted)


@router.post("/speech/sweep", response_model=CacheMaintenanceResponse)
async def sweep_speech_cache(cache: SpeechCache = Depends(get_speech_cache)):
    try:
        removed = await cache.sweep_expired()
    except CacheUnavailableError as exc:
        raise ApiError.from_tutor_error(exc) from exc
    return CacheMaintenanceResponse(cache="speech", action="sweep_expired", affected=removed)


@router.post("/speech/clear", response_model=CacheMaintenanceResponse)
async def clear_speech_cache(cache: SpeechCache = Depends(get_speech_cache)):
    try:
        removed = await cache.clear()
    except CacheUnavailableError as exc:
        raise ApiError.from_tutor_error(exc) from exc
    logger.warning("speech_cache_cleared_via_api", removed=removed)
    return CacheMaintenanceResponse(cache="speech", action="clear", affected=removed)


@router.post("/speech/precache", response_model=PrecacheResponse)
async def precache_speech(
    request: PrecacheRequest,
    synthesis: SpeechSynthesisService = Depends(get_synthesis_service),
):
    summary = await synthesis.precache_phrases(request.phrases, voice_id=request.voice_id, quality=request.quality)
    return PrecacheResponse(**summary)
