"""Provider 抽象接口。

上层 AgentConnection 不直接依赖具体后端的 HTTP 协议，而是依赖此协议：

- 每种后端实现一个 ProviderClient（OpenAIClient、MastraClient、CustomClient）。
- 非流式调用统一经由 handle_response 归一化为 LLMResponse。
- 流式调用返回 StreamHandle，事件通过 handler 回调逐个交付。

本模块同时提供各适配器共享的辅助函数（HTTP 错误映射、usage 解析、
结构化 schema 处理）以及流式任务的统一执行入口 run_http_stream。
"""

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
import pydantic

from agent_bridge.domain.exceptions import (
    ApiError,
    BusinessError,
    NetworkError,
    RateLimitError,
    TransportError,
    ValidationError,
)
from agent_bridge.domain.models import (
    ErrorEvent,
    LLMParams,
    LLMResponse,
    LLMUsage,
    StreamHandler,
    StructuredParams,
    VoiceLLMResponse,
    VoiceParams,
)
from agent_bridge.infrastructure.logging.logger import logger
from agent_bridge.providers.event_stream import create_default_stream_handlers, handle_event_stream, maybe_await


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志。
    - call_llm / call_llm_structured / voice_llm: 一次请求一次响应。
    - stream_llm: 立即返回 StreamHandle，传输错误只通过 handler 与
      completion 交付。
    - handle_response: 把后端原始 JSON 归一化为 LLMResponse。
    """

    name: str

    async def call_llm(self, params: LLMParams, config: Any) -> LLMResponse:
        ...

    async def call_llm_structured(self, params: StructuredParams, config: Any) -> LLMResponse:
        ...

    def stream_llm(self, params: LLMParams, config: Any, handler: StreamHandler) -> "StreamHandle":
        ...

    async def voice_llm(self, params: VoiceParams, config: Any) -> VoiceLLMResponse:
        ...

    def handle_response(self, data: Any) -> LLMResponse:
        ...


_stream_ids = itertools.count(1)


class StreamHandle:
    """一次流式调用的可取消句柄。

    - abort(): 停止后续事件的交付并取消底层读取；可重复调用，
      流结束后调用为空操作。中止不是错误，completion 正常结束。
    - completion: asyncio.Task，成功或中止时结果为 None，
      传输失败时抛出 TransportError。
    """

    def __init__(self, stream_id: Optional[str] = None):
        self.stream_id = stream_id or f"stream-{next(_stream_ids)}"
        self.aborted = False
        self.finished = False
        self._inner: Optional[asyncio.Task] = None
        self.completion: Optional[asyncio.Task] = None

    @classmethod
    def run(
        cls,
        factory: Callable[["StreamHandle"], Awaitable[Any]],
        stream_id: Optional[str] = None,
    ) -> "StreamHandle":
        """在当前事件循环上启动 factory(handle) 并返回句柄。

        必须在运行中的事件循环内调用。
        """

        handle = cls(stream_id)
        loop = asyncio.get_running_loop()
        handle._inner = loop.create_task(factory(handle))
        handle.completion = loop.create_task(handle._settle())
        return handle

    def should_stop(self) -> bool:
        return self.aborted

    def abort(self) -> None:
        if self.aborted or self.finished:
            return
        self.aborted = True
        if self._inner is not None and not self._inner.done():
            self._inner.cancel()
        logger.debug("Stream aborted", extra={"extra": {"stream_id": self.stream_id}})

    async def _settle(self) -> None:
        try:
            await self._inner
        except asyncio.CancelledError:
            # 只吞掉由 abort 引起的取消，外部取消照常传播
            if not self.aborted:
                raise
        finally:
            self.finished = True


# ---- 适配器共享的辅助函数 ----


def raise_for_status(resp: httpx.Response, provider: str) -> None:
    """把 HTTP 错误映射为业务异常。"""

    if resp.status_code == 429:
        # 限流错误交给上层做重试/退避
        raise RateLimitError(code="RATE_LIMIT", message=f"{provider} rate limit", http_status=429)
    if resp.status_code >= 400:
        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code, provider=provider)


async def post_json(
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
    provider: str,
) -> Any:
    """POST JSON 并返回解析后的响应体。"""

    try:
        async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
            resp = await client.post(url, json=payload, headers=headers)
    except httpx.RequestError as e:
        # 网络错误：DNS 失败、连接超时等
        raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=provider) from e
    raise_for_status(resp, provider)
    try:
        return resp.json()
    except ValueError as e:
        raise ApiError(code="API_ERROR", message="Response is not valid JSON", http_status=resp.status_code) from e


def run_http_stream(
    provider: str,
    url: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
    handler: StreamHandler,
) -> StreamHandle:
    """以流式方式 POST，并把帧解码结果交给 handler。

    连接失败与非成功状态都转为 TransportError：先投递 ErrorEvent，
    再让 completion 以该异常结束。
    """

    async def consume(handle: StreamHandle) -> None:
        handlers = create_default_stream_handlers(handler, provider)
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    await handle_event_stream(resp, handlers, should_stop=handle.should_stop)
        except httpx.RequestError as e:
            error = TransportError(code="TRANSPORT_ERROR", message=str(e), stream_id=handle.stream_id)
            await maybe_await(handler(ErrorEvent(error=error)))
            raise error from e
        except TransportError as e:
            e.extra.setdefault("stream_id", handle.stream_id)
            await maybe_await(handler(ErrorEvent(error=e)))
            raise

    return StreamHandle.run(consume)


def parse_usage(raw: Any) -> Optional[LLMUsage]:
    """兼容 snake_case（OpenAI）与 camelCase（Mastra）两种 usage 写法。"""

    if not isinstance(raw, dict) or not raw:
        return None
    return LLMUsage(
        prompt_tokens=int(raw.get("prompt_tokens", raw.get("promptTokens", 0)) or 0),
        completion_tokens=int(raw.get("completion_tokens", raw.get("completionTokens", 0)) or 0),
        total_tokens=int(raw.get("total_tokens", raw.get("totalTokens", 0)) or 0),
    )


def _is_model_class(schema: Any) -> bool:
    return isinstance(schema, type) and issubclass(schema, pydantic.BaseModel)


def resolve_json_schema(schema: Any) -> Optional[Dict[str, Any]]:
    """schema 可以是 JSON Schema 字典或 pydantic 模型类。"""

    if schema is None:
        return None
    if _is_model_class(schema):
        return schema.model_json_schema()
    if isinstance(schema, dict):
        return schema
    raise ValidationError(code="VALIDATION_ERROR", message=f"Unsupported schema type: {type(schema).__name__}")


def validate_structured(schema: Any, obj: Any) -> Any:
    """当 schema 为 pydantic 模型时校验结构化输出，返回 JSON 兼容的字典。"""

    if obj is None or not _is_model_class(schema):
        return obj
    try:
        if isinstance(obj, list):
            return [schema.model_validate(item).model_dump(mode="json") for item in obj]
        return schema.model_validate(obj).model_dump(mode="json")
    except pydantic.ValidationError as e:
        raise ValidationError(code="SCHEMA_MISMATCH", message=str(e)) from e


def coerce_response(result: Any) -> LLMResponse:
    """宿主回调可返回 LLMResponse、字典或字符串。"""

    if isinstance(result, LLMResponse):
        return result
    if isinstance(result, str):
        return LLMResponse(content=result)
    if isinstance(result, dict):
        return LLMResponse(
            content=result.get("content") or "",
            usage=parse_usage(result.get("usage")),
            metadata=dict(result.get("metadata") or {}),
            object=result.get("object"),
        )
    raise BusinessError(code="INVALID_RESPONSE", message=f"Unsupported response type: {type(result).__name__}")
