"""统一的调用参数、响应与流式事件模型。

本模块定义了运行时在不同 Provider 之间共享的标准数据结构：

- LLMParams / StructuredParams / VoiceParams: 发给 Provider 的请求参数。
- LLMResponse / VoiceLLMResponse: Provider 非流式调用的统一响应。
- StreamEvent: 帧解码器产出的语义事件（chunk/object/done/error/metadata）。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的线上格式和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union


# 对话角色（与宿主 UI 的消息角色对应）
Role = Literal["user", "assistant", "bot"]

# 流式完成时按产出顺序收集的条目：文本或结构化对象
CompletedItem = Union[str, Dict[str, Any]]


@dataclass
class LLMUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class LLMResponse:
    """一次非流式调用的归一化结果。

    - content: 纯文本内容。
    - usage: 可选的 token 使用统计。
    - metadata: Provider 附带的额外信息。
    - object: 结构化输出（单个对象或对象列表）。
    """

    content: str = ""
    usage: Optional[LLMUsage] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    object: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = None


@dataclass
class VoiceLLMResponse(LLMResponse):
    """语音调用结果，在 LLMResponse 基础上增加转写与音频字段。"""

    transcription: Optional[str] = None
    audio_data: Optional[str] = None  # base64 编码音频
    audio_url: Optional[str] = None
    audio_format: Optional[str] = None


@dataclass
class LLMParams:
    """一次调用的通用参数。

    不同 Provider 需要的字段不同：openai 需要 model，mastra 需要 route，
    custom 则把整个参数对象原样交给宿主回调。extra 中的键会被合并进请求体。
    """

    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None
    route: Optional[str] = None
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    thread_id: Optional[str] = None
    additional_context: Optional[Any] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StructuredParams(LLMParams):
    """结构化输出参数：schema 可以是 JSON Schema 字典或 pydantic 模型类。"""

    schema: Optional[Any] = None
    schema_name: Optional[str] = None
    schema_description: Optional[str] = None


@dataclass
class VoiceParams:
    """语音调用参数。"""

    audio_data: bytes
    language: str = "en-US"
    voice_id: Optional[str] = None
    pitch: Optional[float] = None
    rate: Optional[float] = None
    volume: Optional[float] = None
    endpoint: Optional[str] = None
    context: Optional[str] = None
    audio_mime_type: str = "audio/webm"


# ---- 流式事件 ----


@dataclass(frozen=True)
class ChunkEvent:
    """一段增量文本。"""

    content: str
    type: Literal["chunk"] = field(default="chunk", init=False)


@dataclass(frozen=True)
class ObjectEvent:
    """一个结构化对象（工具调用增量、带 type 的事件等）。"""

    object: Union[Dict[str, Any], List[Dict[str, Any]]]
    type: Literal["object"] = field(default="object", init=False)


@dataclass(frozen=True)
class DoneEvent:
    """流结束，携带按产出顺序排列的已完成条目。"""

    completed_items: List[CompletedItem] = field(default_factory=list)
    type: Literal["done"] = field(default="done", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    """传输失败等致命错误。"""

    error: BaseException
    type: Literal["error"] = field(default="error", init=False)


@dataclass(frozen=True)
class MetadataEvent:
    """Provider 附带的元数据。"""

    data: Any
    type: Literal["metadata"] = field(default="metadata", init=False)


StreamEvent = Union[ChunkEvent, ObjectEvent, DoneEvent, ErrorEvent, MetadataEvent]

# 流事件处理函数：可以是普通函数，也可以是协程函数
StreamHandler = Callable[[StreamEvent], Union[None, Awaitable[None]]]
