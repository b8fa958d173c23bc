"""Agent 连接编排。

把 Provider 适配器、消息存储、事件分发注册表与 diff 引擎串成一次完整对话：

1. 追加用户消息；
2. 按 provider 构造请求参数；
3. 流式或非流式调用后端；
4. 文本交给消息存储合并，结构化对象交给注册表分发；
5. 失败时写入一条助手错误消息，而不是把异常抛给宿主。
"""

import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from agent_bridge.config.settings import settings
from agent_bridge.domain.exceptions import ProviderNotConfiguredError, ValidationError
from agent_bridge.domain.models import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    LLMParams,
    LLMResponse,
    ObjectEvent,
    StreamEvent,
    StreamHandler,
    StructuredParams,
    VoiceLLMResponse,
    VoiceParams,
)
from agent_bridge.infrastructure.logging.logger import logger
from agent_bridge.messages.store import ThreadMessageStore
from agent_bridge.processors.defaults import DEFAULT_PROCESSORS
from agent_bridge.processors.registry import DispatchReport, ProcessorContext, ProcessorRegistry
from agent_bridge.providers import get_provider_client
from agent_bridge.providers.base import StreamHandle
from agent_bridge.providers.event_stream import maybe_await
from agent_bridge.providers.registry import ProviderConfig
from agent_bridge.state.diff_history import DiffHistoryEngine


ERROR_MESSAGE = "An error occurred while sending your message."

ResponseItem = Union[str, Dict[str, Any], List[Dict[str, Any]]]


class AgentConnection:
    def __init__(
        self,
        provider_config: Optional[ProviderConfig] = None,
        store: Optional[ThreadMessageStore] = None,
        registry: Optional[ProcessorRegistry] = None,
        diff: Optional[DiffHistoryEngine] = None,
        cfg=settings,
    ):
        self.provider_config = provider_config
        self.store = store or ThreadMessageStore(user_id=cfg.user_id)
        self.registry = registry or ProcessorRegistry(DEFAULT_PROCESSORS)
        self.diff = diff or DiffHistoryEngine()
        self._cfg = cfg
        self.is_connected = False
        self.is_streaming = False
        self.is_processing = False
        self.current_stream: Optional[StreamHandle] = None

    # ---- 连接状态 ----

    def set_provider_config(self, config: Optional[ProviderConfig]) -> None:
        self.provider_config = config

    def connect(self) -> None:
        self.is_connected = True
        self._log(logging.INFO, "Agent connected", {}, provider=self._provider_name())

    def disconnect(self) -> None:
        self.cancel_stream()
        self.is_connected = False
        self._log(logging.INFO, "Agent disconnected", {}, provider=self._provider_name())

    def cancel_stream(self) -> None:
        if self.current_stream is not None:
            self.current_stream.abort()

    # ---- Provider 调用 ----

    async def call_llm(self, params: LLMParams) -> LLMResponse:
        config = self._require_config()
        self._validate_params(config, params)
        log_ctx = self._request_ctx(config, params)
        self._log(logging.INFO, "LLM request", log_ctx)
        try:
            response = await get_provider_client(config, self._cfg).call_llm(params, config)
        except Exception as e:
            self._log(logging.ERROR, "LLM request failed", log_ctx, error=str(e), code=getattr(e, "code", None))
            raise
        self._log(logging.INFO, "LLM response", log_ctx, usage=response.usage, has_object=response.object is not None)
        return response

    async def call_llm_structured(self, params: StructuredParams) -> LLMResponse:
        config = self._require_config()
        self._validate_params(config, params)
        log_ctx = self._request_ctx(config, params)
        self._log(logging.INFO, "Structured LLM request", log_ctx, schema_name=params.schema_name)
        try:
            response = await get_provider_client(config, self._cfg).call_llm_structured(params, config)
        except Exception as e:
            self._log(logging.ERROR, "LLM request failed", log_ctx, error=str(e), code=getattr(e, "code", None))
            raise
        self._log(logging.INFO, "LLM response", log_ctx, usage=response.usage, has_object=response.object is not None)
        return response

    def stream_llm(self, params: LLMParams, handler: StreamHandler) -> StreamHandle:
        """启动一次流式调用，必须在运行中的事件循环内调用。

        handler 收到的事件与 provider 产出的一致；连接额外记录每个事件，
        并在 completion 结束（成功、失败或中止）后清除 is_streaming。
        """

        config = self._require_config()
        self._validate_params(config, params)
        log_ctx = self._request_ctx(config, params)
        self._log(logging.INFO, "Stream started", log_ctx)

        async def wrapped(event: StreamEvent) -> None:
            if isinstance(event, ChunkEvent):
                self._log(logging.DEBUG, "Stream chunk", log_ctx, size=len(event.content))
            elif isinstance(event, ObjectEvent):
                self._log(logging.DEBUG, "Stream object", log_ctx, object=event.object)
            elif isinstance(event, DoneEvent):
                self._log(logging.INFO, "Stream finished", log_ctx, items=len(event.completed_items))
            elif isinstance(event, ErrorEvent):
                self._log(logging.ERROR, "Stream failed", log_ctx, error=str(event.error))
            await maybe_await(handler(event))

        handle = get_provider_client(config, self._cfg).stream_llm(params, config, wrapped)
        self.current_stream = handle
        self.is_streaming = True
        log_ctx["stream_id"] = handle.stream_id

        def settled(_task: Any) -> None:
            if self.current_stream is handle:
                self.current_stream = None
                self.is_streaming = False

        handle.completion.add_done_callback(settled)
        return handle

    async def voice_llm(self, params: VoiceParams) -> VoiceLLMResponse:
        config = self._require_config()
        log_ctx = {"request_id": f"req-{uuid4().hex}", "provider": config.provider}
        self._log(logging.INFO, "Voice request", log_ctx, language=params.language, size=len(params.audio_data))
        try:
            response = await get_provider_client(config, self._cfg).voice_llm(params, config)
        except Exception as e:
            self._log(logging.ERROR, "Voice request failed", log_ctx, error=str(e), code=getattr(e, "code", None))
            raise
        self._log(logging.INFO, "Voice response", log_ctx, has_audio=bool(response.audio_data or response.audio_url))
        return response

    # ---- 响应分发 ----

    def handle_llm_response(self, items: Iterable[ResponseItem], thread_id: Optional[str] = None) -> List[DispatchReport]:
        """把响应条目落到状态上。

        - 字符串：合并进最新的助手消息（流式期间不立即持久化）。
        - 对象或对象列表：按其 type 分发给注册的处理器；
          没有 type 或没有处理器的对象记录日志后忽略。
        """

        target = thread_id or self.store.current_thread_id
        reports: List[DispatchReport] = []
        for item in items:
            if isinstance(item, str):
                self.store.append_to_latest_message(item, persist=not self.is_streaming, thread_id=target)
                continue
            objects = item if isinstance(item, list) else [item]
            for obj in objects:
                report = self._dispatch_object(obj, target)
                if report is not None:
                    reports.append(report)
        return reports

    def _dispatch_object(self, obj: Any, thread_id: str) -> Optional[DispatchReport]:
        if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
            self._log(logging.INFO, "Unhandled object response", {"thread_id": thread_id}, object=obj)
            return None
        event_type = obj["type"]
        if not self.registry.has_processor(event_type):
            self._log(logging.INFO, "Unhandled structured response type", {"thread_id": thread_id}, type=event_type)
            return None
        context = ProcessorContext(store=self.store, diff=self.diff, thread_id=thread_id, persist=not self.is_streaming)
        return self.registry.dispatch(event_type, obj, context)

    # ---- 完整对话 ----

    async def send_message(
        self,
        prompt: str,
        stream: bool = False,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        route: Optional[str] = None,
        temperature: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """发送一条用户消息并把回复写入当前线程。

        任何失败都会被记录，并以一条助手错误消息的形式呈现，不向调用方抛出。
        """

        thread_id = self.store.current_thread_id
        log_ctx: Dict[str, Any] = {"thread_id": thread_id, "stream": stream}
        self.is_processing = True
        start_time = time.time()
        try:
            self.store.add_message({"role": "user", "type": "text", "content": prompt}, thread_id=thread_id)
            config = self._require_config()
            params = self._build_params(config, prompt, model, system_prompt, route, temperature, user_id, thread_id)
            if stream:
                await self._stream_into(params, thread_id)
            else:
                response = await self.call_llm(params)
                if response.content:
                    self.handle_llm_response([response.content], thread_id)
                if response.object is not None:
                    self.handle_llm_response([response.object], thread_id)
        except Exception as e:
            self._log(logging.ERROR, "Send message failed", log_ctx, exc_info=e, error=str(e))
            self.store.add_message(
                {"role": "assistant", "type": "text", "content": ERROR_MESSAGE},
                thread_id=thread_id,
            )
        finally:
            self.is_processing = False
            self._log(logging.INFO, "Send message finished", log_ctx, duration_ms=int((time.time() - start_time) * 1000))

    async def _stream_into(self, params: LLMParams, thread_id: str) -> None:
        start_idx = len(self.store.get_thread_messages(thread_id))
        # message 对象已由处理器写成消息，紧随其后的镜像 chunk 不再合并
        mirrored: List[Optional[str]] = [None]

        def on_event(event: StreamEvent) -> None:
            if isinstance(event, ChunkEvent):
                expected, mirrored[0] = mirrored[0], None
                if expected is not None and event.content == expected:
                    return
                self.handle_llm_response([event.content], thread_id)
            elif isinstance(event, ObjectEvent):
                mirrored[0] = None
                reports = self.handle_llm_response([event.object], thread_id)
                obj = event.object
                if isinstance(obj, dict) and any(r.type == "message" and r.executed for r in reports):
                    content = obj.get("content")
                    mirrored[0] = content if isinstance(content, str) else json.dumps(obj, ensure_ascii=False)

        handle = self.stream_llm(params, on_event)
        try:
            await handle.completion
        finally:
            # 流式期间新增/合并的消息在结束后一次性持久化
            for message in self.store.get_thread_messages(thread_id)[start_idx:]:
                self.store.persist_message(message.id, thread_id)

    def _build_params(
        self,
        config: ProviderConfig,
        prompt: str,
        model: Optional[str],
        system_prompt: Optional[str],
        route: Optional[str],
        temperature: Optional[float],
        user_id: Optional[str],
        thread_id: str,
    ) -> LLMParams:
        user_id = user_id or self.store.user_id
        common = {"prompt": prompt, "system_prompt": system_prompt, "temperature": temperature}
        if config.provider == "openai":
            return LLMParams(model=model or self._cfg.default_model, **common)
        if config.provider == "mastra":
            return LLMParams(
                route=route or config.chat_path or "/chat",
                resource_id=user_id,
                thread_id=thread_id,
                **common,
            )
        return LLMParams(model=model, user_id=user_id, thread_id=thread_id, **common)

    # ---- 内部 ----

    def _require_config(self) -> ProviderConfig:
        if self.provider_config is None:
            raise ProviderNotConfiguredError(code="PROVIDER_NOT_CONFIGURED", message="No LLM provider configured")
        return self.provider_config

    @staticmethod
    def _validate_params(config: ProviderConfig, params: LLMParams) -> None:
        if config.provider == "openai" and not params.model:
            raise ValidationError(code="VALIDATION_ERROR", message="openai provider requires 'model' parameter")
        if config.provider == "mastra" and not params.route:
            raise ValidationError(code="VALIDATION_ERROR", message="Mastra provider requires 'route' parameter")

    @staticmethod
    def _request_ctx(config: ProviderConfig, params: LLMParams) -> Dict[str, Any]:
        return {
            "request_id": f"req-{uuid4().hex}",
            "provider": config.provider,
            "model": params.model,
            "route": params.route,
        }

    def _provider_name(self) -> Optional[str]:
        return self.provider_config.provider if self.provider_config is not None else None

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], exc_info=None, **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, exc_info=exc_info, extra={"extra": payload})
