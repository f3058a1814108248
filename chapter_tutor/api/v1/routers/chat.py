from __future__ import annotations

import base64
import json
from contextlib import aclosing
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from chapter_tutor.api.dependencies import get_orchestrator
from chapter_tutor.api.v1.auth import Principal, require_principal
from chapter_tutor.api.v1.errors import ERROR_RESPONSES, ApiError
from chapter_tutor.application.events import costs_payload, tokens_payload
from chapter_tutor.application.use_cases.tutor_turn_orchestrator import TurnCommand, TutorTurnOrchestrator
from chapter_tutor.domain.exceptions import EmptyQuestionError, TutorError

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class TurnCostsModel(BaseModel):
    whisper: float
    claude: float
    tts: float
    total: float


class TurnTokensModel(BaseModel):
    input_tokens: int
    output_tokens: int
    cached_input_tokens: int

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatTurnResponse(BaseModel):
    session_id: str
    message: str
    transcript: Optional[str] = None
    audio: Optional[str] = None
    in_scope: bool
    scope_confidence: float
    was_filtered: bool
    costs: TurnCostsModel
    tokens: TurnTokensModel
    latency_ms: int

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "sessionId": "0b7f6a7e-2f55-4a8e-9d3c-1f0a7f3c9b21",
                "message": "A noun is a word that names a person, place, thing, or idea.",
                "transcript": None,
                "audio": "SUQzBAAAAAAAI1RTU0UAAAAPAAADTGF2ZjYwLjMuMTAwAAAAAAAAAAAAAAD/",
                "inScope": True,
                "scopeConfidence": 1.0,
                "wasFiltered": False,
                "costs": {"whisper": 0.0, "claude": 0.00162, "tts": 0.00093, "total": 0.00255},
                "tokens": {"inputTokens": 24, "outputTokens": 61, "cachedInputTokens": 880},
                "latencyMs": 2140,
            }
        },
    )


@router.post(
    "/turns",
    response_model=ChatTurnResponse,
    responses={
        200: {
            "description": "JSON reply, or an SSE stream of text/audio/complete/error events when stream=true.",
            "content": {"text/event-stream": {}},
        },
        **{code: ERROR_RESPONSES[code] for code in (400, 401, 404, 422, 500, 502)},
    },
)
async def create_turn(
    chapter_id: str = Form(..., alias="chapterId", min_length=1),
    message: Optional[str] = Form(default=None),
    session_id: Optional[str] = Form(default=None, alias="sessionId"),
    stream: bool = Form(default=False),
    voice_id: Optional[str] = Form(default=None, alias="voiceId"),
    quality: Optional[Literal["standard", "hd"]] = Form(default=None),
    audio: Optional[UploadFile] = File(default=None),
    principal: Principal = Depends(require_principal),
    orchestrator: TutorTurnOrchestrator = Depends(get_orchestrator),
):
    audio_bytes = await audio.read() if audio is not None else b""
    if not audio_bytes and not str(message or "").strip():
        raise ApiError.from_tutor_error(EmptyQuestionError())

    cmd = TurnCommand(
        chapter_id=chapter_id,
        user_id=principal.user_id,
        message=message,
        audio=audio_bytes or None,
        audio_filename=(audio.filename if audio is not None and audio.filename else "audio.webm"),
        session_id=session_id or None,
        voice_id=voice_id or None,
        quality=quality,
    )
    logger.info(
        "chat_turn_received",
        chapter_id=chapter_id,
        has_audio=bool(audio_bytes),
        streaming=stream,
        resumed_session=bool(session_id),
    )

    if stream:
        async def _event_stream():
            async with aclosing(orchestrator.stream(cmd)) as events:
                async for event in events:
                    yield f"data: {json.dumps(event.to_payload(), ensure_ascii=True)}\n\n"

        return StreamingResponse(_event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    try:
        outcome = await orchestrator.handle(cmd)
    except TutorError as exc:
        raise ApiError.from_tutor_error(exc) from exc
    except Exception as exc:
        logger.exception("chat_turn_failed", error=str(exc))
        raise ApiError(status_code=500, code="INTERNAL_ERROR", message="Failed to process chat request") from exc

    return ChatTurnResponse(
        session_id=outcome.session_id,
        message=outcome.message,
        transcript=outcome.transcript,
        audio=base64.b64encode(outcome.audio).decode("ascii") if outcome.audio else None,
        in_scope=outcome.in_scope,
        scope_confidence=outcome.scope_confidence,
        was_filtered=outcome.was_filtered,
        costs=TurnCostsModel(**costs_payload(outcome.costs)),
        tokens=TurnTokensModel(**tokens_payload(outcome.tokens)),
        latency_ms=outcome.latency_ms,
    )
