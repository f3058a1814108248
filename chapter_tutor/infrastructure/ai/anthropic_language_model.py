"""LangChain bridge to Anthropic chat models with prompt caching of the system instruction."""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional, cast

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from chapter_tutor.application.ports import (
    LanguageModelChunk,
    LanguageModelCompletion,
    LanguageModelRequest,
)
from chapter_tutor.core.settings import settings
from chapter_tutor.domain.exceptions import GenerationFailedError
from chapter_tutor.domain.models import TokenUsage

logger = structlog.get_logger(__name__)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts)
    return ""


def usage_from_metadata(metadata: Optional[dict[str, Any]]) -> TokenUsage:
    """
    LangChain reports `input_tokens` as the total prompt size; cache reads and writes are
    broken out under `input_token_details` and subtracted to get the regular input.
    """
    if not metadata:
        return TokenUsage()
    details = metadata.get("input_token_details") or {}
    cache_read = int(details.get("cache_read") or 0)
    cache_creation = int(details.get("cache_creation") or 0)
    total_input = int(metadata.get("input_tokens") or 0)
    return TokenUsage(
        input_tokens=max(total_input - cache_read - cache_creation, 0),
        output_tokens=int(metadata.get("output_tokens") or 0),
        cached_input_tokens=cache_read,
        cache_creation_tokens=cache_creation,
    )


def build_messages(request: LanguageModelRequest) -> list[BaseMessage]:
    if request.cache_system:
        system = SystemMessage(
            content=[
                {
                    "type": "text",
                    "text": request.system_instruction,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        )
    else:
        system = SystemMessage(content=request.system_instruction)

    messages: list[BaseMessage] = [system]
    for turn in request.history:
        if turn.role == "user":
            messages.append(HumanMessage(content=turn.content))
        elif turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
    messages.append(HumanMessage(content=request.question))
    return messages


def build_chat_model() -> BaseChatModel:
    if not settings.ANTHROPIC_API_KEY:
        raise GenerationFailedError(details="ANTHROPIC_API_KEY is not configured")
    from langchain_anthropic import ChatAnthropic

    return ChatAnthropic(
        model=settings.ANTHROPIC_MODEL,
        max_tokens=settings.ANTHROPIC_MAX_TOKENS,
        temperature=settings.ANTHROPIC_TEMPERATURE,
        api_key=cast(Any, settings.ANTHROPIC_API_KEY),
        max_retries=0,
    )


class AnthropicLanguageModel:
    def __init__(self, chat_model: Optional[BaseChatModel] = None):
        self._chat_model = chat_model

    @property
    def chat_model(self) -> BaseChatModel:
        if self._chat_model is None:
            self._chat_model = build_chat_model()
        return self._chat_model

    async def complete(self, request: LanguageModelRequest) -> LanguageModelCompletion:
        response = await self.chat_model.ainvoke(build_messages(request))
        usage = usage_from_metadata(getattr(response, "usage_metadata", None))
        return LanguageModelCompletion(text=_content_text(response.content), usage=usage)

    async def stream(self, request: LanguageModelRequest) -> AsyncIterator[LanguageModelChunk]:
        async for chunk in self.chat_model.astream(build_messages(request)):
            metadata = getattr(chunk, "usage_metadata", None)
            yield LanguageModelChunk(
                text=_content_text(chunk.content),
                usage=usage_from_metadata(metadata) if metadata else None,
            )
