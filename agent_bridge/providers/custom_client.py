"""宿主回调驱动的 Provider。

所有能力都来自 CustomConfig 中的回调；缺失时的回退顺序：

- call_llm_structured → call_llm → ValidationError
- stream_llm → call_llm（整段内容作为一个 chunk，再发 done）→ ValidationError
- voice_llm → 空响应
"""

import inspect
from typing import Any

from agent_bridge.domain.exceptions import ValidationError
from agent_bridge.domain.models import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    LLMParams,
    LLMResponse,
    StreamHandler,
    StructuredParams,
    VoiceLLMResponse,
    VoiceParams,
)
from agent_bridge.infrastructure.logging.logger import logger
from agent_bridge.providers.base import StreamHandle, coerce_response, parse_usage
from agent_bridge.providers.event_stream import maybe_await
from agent_bridge.providers.registry import CustomConfig


class CustomClient:
    name = "custom"

    async def call_llm(self, params: LLMParams, config: CustomConfig) -> LLMResponse:
        if config.call_llm is None:
            raise ValidationError(code="VALIDATION_ERROR", message="Custom provider requires a call_llm function")
        return coerce_response(await maybe_await(config.call_llm(params, config)))

    async def call_llm_structured(self, params: StructuredParams, config: CustomConfig) -> LLMResponse:
        if config.call_llm_structured is not None:
            return coerce_response(await maybe_await(config.call_llm_structured(params, config)))
        if config.call_llm is not None:
            return coerce_response(await maybe_await(config.call_llm(params, config)))
        raise ValidationError(
            code="VALIDATION_ERROR",
            message="Custom provider requires a call_llm_structured or call_llm function",
        )

    def stream_llm(self, params: LLMParams, config: CustomConfig, handler: StreamHandler) -> StreamHandle:
        if config.stream_llm is not None:
            result = config.stream_llm(params, config, handler)
            if isinstance(result, StreamHandle):
                return result
            if inspect.isawaitable(result):

                async def wait(handle: StreamHandle) -> None:
                    await result

                return StreamHandle.run(wait)
            raise ValidationError(
                code="VALIDATION_ERROR",
                message="Custom stream_llm must return a StreamHandle or an awaitable",
            )
        if config.call_llm is None:
            raise ValidationError(code="VALIDATION_ERROR", message="Custom provider requires a stream_llm or call_llm function")

        async def fallback(handle: StreamHandle) -> None:
            try:
                response = coerce_response(await maybe_await(config.call_llm(params, config)))
            except Exception as e:
                logger.warning(
                    "Custom provider call failed during stream fallback",
                    exc_info=True,
                    extra={"extra": {"stream_id": handle.stream_id, "code": getattr(e, "code", None)}},
                )
                await maybe_await(handler(ErrorEvent(error=e)))
                return
            if handle.should_stop():
                return
            await maybe_await(handler(ChunkEvent(content=response.content or "")))
            await maybe_await(handler(DoneEvent(completed_items=[response.content or ""])))

        return StreamHandle.run(fallback)

    async def voice_llm(self, params: VoiceParams, config: CustomConfig) -> VoiceLLMResponse:
        if config.voice_llm is None:
            return VoiceLLMResponse(content="")
        result = await maybe_await(config.voice_llm(params, config))
        if isinstance(result, VoiceLLMResponse):
            return result
        base = coerce_response(result)
        return VoiceLLMResponse(content=base.content, usage=base.usage, metadata=base.metadata, object=base.object)

    def handle_response(self, data: Any) -> LLMResponse:
        return LLMResponse(
            content=data.get("content") or data.get("message") or "",
            usage=parse_usage(data.get("usage")),
            metadata=dict(data.get("metadata") or {}),
        )
