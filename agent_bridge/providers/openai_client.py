"""OpenAI 兼容 Provider 适配器。

本模块负责：

1. 接收统一的 LLMParams / StructuredParams。
2. 将其转换为 chat/completions 请求（结构化输出使用 response_format=json_schema）。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON 解析为统一的 LLMResponse。

流式调用复用 run_http_stream，增量由帧解码器按 delta 格式解析。
"""

import json
from typing import Any, Dict, List

from agent_bridge.config.settings import settings
from agent_bridge.domain.exceptions import ValidationError
from agent_bridge.domain.models import (
    LLMParams,
    LLMResponse,
    StreamHandler,
    StructuredParams,
    VoiceLLMResponse,
    VoiceParams,
)
from agent_bridge.providers.base import (
    StreamHandle,
    parse_usage,
    post_json,
    resolve_json_schema,
    run_http_stream,
    validate_structured,
)
from agent_bridge.providers.registry import OpenAIConfig


class OpenAIClient:
    """OpenAI 兼容客户端实现。"""

    name = "openai"

    def __init__(self, cfg=settings):
        # Settings 里只取超时；密钥与地址来自 OpenAIConfig
        self._settings = cfg

    async def call_llm(self, params: LLMParams, config: OpenAIConfig) -> LLMResponse:
        self._check(params, config)
        data = await post_json(
            f"{config.base_url}/chat/completions",
            self._build_payload(params),
            self._headers(config),
            self._settings.http_timeout,
            self.name,
        )
        return self.handle_response(data)

    async def call_llm_structured(self, params: StructuredParams, config: OpenAIConfig) -> LLMResponse:
        self._check(params, config)
        payload = self._build_payload(params)
        schema = resolve_json_schema(params.schema)
        if schema is not None:
            json_schema: Dict[str, Any] = {"name": params.schema_name or "response", "schema": schema}
            if params.schema_description:
                json_schema["description"] = params.schema_description
            payload["response_format"] = {"type": "json_schema", "json_schema": json_schema}
        data = await post_json(
            f"{config.base_url}/chat/completions",
            payload,
            self._headers(config),
            self._settings.http_timeout,
            self.name,
        )
        result = self.handle_response(data)
        if schema is not None and result.object is None and result.content:
            try:
                result.object = json.loads(result.content)
            except json.JSONDecodeError as e:
                raise ValidationError(code="SCHEMA_MISMATCH", message="Structured output is not valid JSON") from e
        result.object = validate_structured(params.schema, result.object)
        return result

    def stream_llm(self, params: LLMParams, config: OpenAIConfig, handler: StreamHandler) -> StreamHandle:
        self._check(params, config)
        payload = self._build_payload(params)
        payload["stream"] = True
        return run_http_stream(
            self.name,
            f"{config.base_url}/chat/completions",
            payload,
            self._headers(config),
            self._settings.http_timeout,
            handler,
        )

    async def voice_llm(self, params: VoiceParams, config: OpenAIConfig) -> VoiceLLMResponse:
        raise ValidationError(code="UNSUPPORTED", message="Voice is not supported by the openai provider")

    def handle_response(self, data: Any) -> LLMResponse:
        """将 chat/completions 原始响应解析为 LLMResponse。"""

        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        obj = None
        tool_calls = message.get("tool_calls")
        if tool_calls:
            obj = [self._tool_call_to_object(call) for call in tool_calls]
        return LLMResponse(
            content=message.get("content") or "",
            usage=parse_usage(data.get("usage")),
            metadata={"model": data.get("model"), "id": data.get("id")},
            object=obj,
        )

    # ---- 辅助方法 ----

    def _check(self, params: LLMParams, config: OpenAIConfig) -> None:
        if not config.api_key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="OpenAI API key not set")
        if not params.model:
            raise ValidationError(code="VALIDATION_ERROR", message="OpenAI provider requires a model")

    @staticmethod
    def _headers(config: OpenAIConfig) -> Dict[str, str]:
        return {"Authorization": f"Bearer {config.api_key}", "Content-Type": "application/json"}

    @staticmethod
    def _build_payload(params: LLMParams) -> Dict[str, Any]:
        msgs: List[Dict[str, str]] = []
        if params.system_prompt:
            msgs.append({"role": "system", "content": params.system_prompt})
        msgs.append({"role": "user", "content": params.prompt or ""})
        payload: Dict[str, Any] = {"model": params.model, "messages": msgs}
        if params.temperature is not None:
            payload["temperature"] = params.temperature
        if params.max_tokens is not None:
            payload["max_tokens"] = params.max_tokens
        payload.update(params.extra)
        return payload

    @staticmethod
    def _tool_call_to_object(call: Dict[str, Any]) -> Dict[str, Any]:
        """tool_call 的 arguments 是 JSON 字符串，解析失败时保留原文。"""

        func = call.get("function") or {}
        raw = func.get("arguments")
        if isinstance(raw, str):
            try:
                args = json.loads(raw)
            except json.JSONDecodeError:
                args = {"_raw": raw}
        else:
            args = raw or {}
        obj = {"type": func.get("name") or "tool_call", "id": call.get("id")}
        if isinstance(args, dict):
            obj.update(args)
        return obj
