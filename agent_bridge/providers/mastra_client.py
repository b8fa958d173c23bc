"""Mastra 智能体后端适配器。

- 非流式: POST {base_url}{route}
- 流式:   POST {base_url}{route}/stream（SSE 帧）
- 语音:   POST multipart 到 voice 路由（音频文件 + settings JSON）
- 认证:   仅在配置了 api_key 时附带 Authorization: Bearer <api_key>

请求体使用 camelCase 字段（prompt/systemPrompt/maxTokens/...），
响应中的文本取 text 或 content，结构化输出取 object。
"""

import base64
import json
from typing import Any, Dict

import httpx

from agent_bridge.config.settings import settings
from agent_bridge.domain.exceptions import ApiError, NetworkError, ValidationError
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
    raise_for_status,
    resolve_json_schema,
    run_http_stream,
    validate_structured,
)
from agent_bridge.providers.registry import MastraConfig


DEFAULT_VOICE_ROUTE = "/voice"


class MastraClient:
    """Mastra Provider 客户端实现。"""

    name = "mastra"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 非流式 ----

    async def call_llm(self, params: LLMParams, config: MastraConfig) -> LLMResponse:
        self._check(params)
        data = await post_json(
            f"{config.base_url}{params.route}",
            self._build_body(params),
            self._headers(config),
            self._settings.http_timeout,
            self.name,
        )
        return self.handle_response(data)

    async def call_llm_structured(self, params: StructuredParams, config: MastraConfig) -> LLMResponse:
        self._check(params)
        body = self._build_body(params)
        schema = resolve_json_schema(params.schema)
        if schema is not None:
            body["schema"] = schema
            body["schemaName"] = params.schema_name
            body["schemaDescription"] = params.schema_description
        data = await post_json(
            f"{config.base_url}{params.route}",
            body,
            self._headers(config),
            self._settings.http_timeout,
            self.name,
        )
        result = self.handle_response(data)
        result.object = validate_structured(params.schema, result.object)
        return result

    # ---- 流式 ----

    def stream_llm(self, params: LLMParams, config: MastraConfig, handler: StreamHandler) -> StreamHandle:
        self._check(params)
        return run_http_stream(
            self.name,
            f"{config.base_url}{params.route}/stream",
            self._build_body(params),
            self._headers(config),
            self._settings.http_timeout,
            handler,
        )

    # ---- 语音 ----

    async def voice_llm(self, params: VoiceParams, config: MastraConfig) -> VoiceLLMResponse:
        endpoint = params.endpoint or config.voice_route or DEFAULT_VOICE_ROUTE
        url = endpoint if endpoint.startswith("http") else f"{config.base_url}{endpoint}"
        data: Dict[str, str] = {"settings": json.dumps(self._voice_settings(params), ensure_ascii=False)}
        if params.context:
            data["context"] = json.dumps(params.context, ensure_ascii=False)
        files = {"audio": ("recording.webm", params.audio_data, params.audio_mime_type)}
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(url, data=data, files=files, headers=self._headers(config, json_body=False))
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name) from e
        raise_for_status(resp, self.name)
        return self._parse_voice_response(resp)

    def handle_response(self, data: Any) -> LLMResponse:
        """Mastra 以 text/content 返回文本，以 object 返回结构化输出。"""

        if not isinstance(data, dict):
            raise ApiError(code="API_ERROR", message="Unexpected response shape from mastra")
        return LLMResponse(
            content=data.get("text") or data.get("content") or "",
            usage=parse_usage(data.get("usage")),
            metadata={"model": data.get("model"), "id": data.get("id")},
            object=data.get("object"),
        )

    # ---- 辅助方法 ----

    @staticmethod
    def _check(params: LLMParams) -> None:
        if not params.route:
            raise ValidationError(code="VALIDATION_ERROR", message="Mastra provider requires a route")

    @staticmethod
    def _headers(config: MastraConfig, json_body: bool = True) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if json_body:
            headers["Content-Type"] = "application/json"
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    @staticmethod
    def _build_body(params: LLMParams) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "prompt": params.prompt,
            "systemPrompt": params.system_prompt,
            "temperature": params.temperature,
            "maxTokens": params.max_tokens,
        }
        optional = {
            "resourceId": params.resource_id,
            "threadId": params.thread_id,
            "userId": params.user_id,
            "additionalContext": params.additional_context,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        body.update(params.extra)
        return body

    @staticmethod
    def _voice_settings(params: VoiceParams) -> Dict[str, Any]:
        voice_settings = {
            "language": params.language,
            "voiceId": params.voice_id,
            "pitch": params.pitch,
            "rate": params.rate,
            "volume": params.volume,
            "endpoint": params.endpoint,
        }
        return {k: v for k, v in voice_settings.items() if v is not None}

    def _parse_voice_response(self, resp: httpx.Response) -> VoiceLLMResponse:
        content_type = resp.headers.get("content-type", "")
        if "audio" in content_type:
            return VoiceLLMResponse(
                content="",
                audio_data=base64.b64encode(resp.content).decode("ascii"),
                audio_format=content_type,
            )
        if "application/json" in content_type:
            data = resp.json()
            return VoiceLLMResponse(
                content=data.get("text") or data.get("content") or "",
                usage=parse_usage(data.get("usage")),
                metadata=dict(data.get("metadata") or {}),
                object=data.get("object"),
                transcription=data.get("transcription"),
                audio_data=data.get("audioData"),
                audio_url=data.get("audioUrl"),
                audio_format=data.get("audioFormat"),
            )
        return VoiceLLMResponse(content=resp.text)
