"""服务端推送（SSE）帧解码器。

负责把原始字节流切分为帧、解析每帧的 event/data 字段，
再把 data 归一化为少量语义回调：

- handle_chunk(text): 一段增量文本。
- handle_object(obj): 一个结构化对象。
- handle_complete(items): 流结束，按产出顺序给出已完成条目。

解码器只在缓冲区出现完整帧（以空行分隔）时才处理，
绝不对半帧做任何动作；整个响应不会被整体缓存。
"""

import codecs
import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from agent_bridge.domain.exceptions import TransportError
from agent_bridge.domain.models import ChunkEvent, CompletedItem, DoneEvent, ObjectEvent, StreamHandler
from agent_bridge.infrastructure.logging.logger import logger


FRAME_BOUNDARY = "\n\n"
DONE_EVENT_TYPE = "done"
# data 为这些值时表示流结束/完成标记，不作为文本输出
COMPLETION_SENTINELS = {"[DONE]", "done"}

MaybeAwaitable = Union[None, Awaitable[None]]


async def maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


@dataclass
class StreamHandlers:
    """解码器的三个回调，允许普通函数或协程函数。"""

    handle_chunk: Callable[[str], MaybeAwaitable]
    handle_object: Callable[[Any], MaybeAwaitable]
    handle_complete: Callable[[List[CompletedItem]], MaybeAwaitable]


def process_content_chunk(raw_chunk: str) -> str:
    """把转义的换行符 ``\\n`` 还原为真实换行。"""

    return raw_chunk.replace("\\n", "\n")


def parse_sse_frame(raw: str) -> Tuple[str, str]:
    """解析单个帧，返回 (event_type, data)。

    缺省 event 为 "message"；多行 data 以换行拼接，
    每行 ``data:`` 之后的一个前导空格会被去掉。
    """

    event_type = "message"
    data_lines: List[str] = []
    for line in raw.split("\n"):
        if line.startswith("event:"):
            event_type = line[6:].strip()
        elif line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
    return event_type, "\n".join(data_lines)


def create_default_stream_handlers(handler: StreamHandler, provider_name: str = "unknown") -> StreamHandlers:
    """把解码器回调映射为 StreamEvent 并交给宿主 handler。

    自带 type == "message" 的对象，额外以 chunk 形式输出其 content，
    便于只关心文本的订阅者直接展示。
    """

    async def handle_chunk(chunk: str) -> None:
        await maybe_await(handler(ChunkEvent(content=chunk)))

    async def handle_object(obj: Any) -> None:
        await maybe_await(handler(ObjectEvent(object=obj)))
        if isinstance(obj, dict) and obj.get("type") == "message":
            content = obj.get("content")
            if not isinstance(content, str):
                content = json.dumps(obj, ensure_ascii=False)
            await maybe_await(handler(ChunkEvent(content=content)))

    async def handle_complete(completed_items: List[CompletedItem]) -> None:
        await maybe_await(handler(DoneEvent(completed_items=list(completed_items))))
        logger.debug(
            "Stream completed",
            extra={"extra": {"provider": provider_name, "completed_items": len(completed_items)}},
        )

    return StreamHandlers(handle_chunk=handle_chunk, handle_object=handle_object, handle_complete=handle_complete)


class FrameDecoder:
    """增量帧解码器。

    一个实例对应一次流，不可重启：feed 负责累积与切帧，
    finish 冲刷剩余文本并触发完成回调（仅一次）。
    """

    def __init__(self, handlers: StreamHandlers, should_stop: Optional[Callable[[], bool]] = None):
        self._handlers = handlers
        self._should_stop = should_stop or (lambda: False)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._current_text = ""
        self.completed_items: List[CompletedItem] = []
        self.done = False

    async def feed(self, data: Union[bytes, str]) -> bool:
        """喂入一段原始数据，返回是否已读到“流结束”帧。"""

        if self.done:
            return True
        text = self._decoder.decode(data) if isinstance(data, bytes) else data
        # 整个缓冲区统一换行；末尾孤立的 \r 留到下一段再配对
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        while FRAME_BOUNDARY in self._buffer:
            if self._should_stop():
                return True
            raw_frame, self._buffer = self._buffer.split(FRAME_BOUNDARY, 1)
            if not raw_frame.strip():
                continue
            event_type, payload = parse_sse_frame(raw_frame)
            if event_type.strip() == DONE_EVENT_TYPE or payload.strip() == "[DONE]":
                self.done = True
                return True
            await self._process_data(payload)
        return False

    async def finish(self) -> List[CompletedItem]:
        """冲刷累积文本并调用完成回调。"""

        self.done = True
        self._flush_text()
        await maybe_await(self._handlers.handle_complete(self.completed_items))
        return self.completed_items

    # ---- 内部 ----

    def _flush_text(self) -> None:
        if self._current_text.strip():
            self.completed_items.append(self._current_text.strip())
        self._current_text = ""

    async def _emit_text(self, raw: str) -> None:
        content = process_content_chunk(raw)
        self._current_text += content
        await maybe_await(self._handlers.handle_chunk(content))

    async def _emit_object(self, obj: Any) -> None:
        # 结构化对象之前的文本先落为一个完成条目
        self._flush_text()
        await maybe_await(self._handlers.handle_object(obj))
        self.completed_items.append(obj)

    async def _process_data(self, data: str) -> None:
        if data.strip() in COMPLETION_SENTINELS:
            return
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            if data.strip():
                await self._emit_text(data)
            return

        if isinstance(parsed, list):
            await self._emit_object(parsed)
            return
        if not isinstance(parsed, dict):
            # 裸 JSON 标量（数字、字符串）按纯文本处理
            if data.strip():
                await self._emit_text(data)
            return

        delta = _extract_delta(parsed)
        if delta is not None:
            if isinstance(delta.get("content"), str) and delta["content"]:
                await self._emit_text(delta["content"])
            if delta.get("tool_calls") or delta.get("function_call"):
                await self._emit_object(delta)
            # 只有 role 或空 delta：忽略
            return
        if parsed.get("type"):
            await self._emit_object(parsed)
        elif isinstance(parsed.get("content"), str) and parsed["content"]:
            await self._emit_text(parsed["content"])
        else:
            await self._emit_object(parsed)


def _extract_delta(parsed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict) or not isinstance(first.get("delta"), dict):
        return None
    return first["delta"]


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


async def handle_event_stream(
    response: Any,
    handlers: StreamHandlers,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[CompletedItem]:
    """消费一个 httpx 流式响应，直到流结束帧、响应结束或被中止。

    非成功状态码或缺少响应体时立即抛出 TransportError，不再投递任何事件。
    被中止时不会调用完成回调。
    """

    status = getattr(response, "status_code", 0)
    if not _is_success(status):
        raise TransportError(code="TRANSPORT_ERROR", message=f"HTTP error! status: {status}", http_status=status)
    if not hasattr(response, "aiter_bytes"):
        raise TransportError(code="TRANSPORT_ERROR", message="Response body is not readable", http_status=status)

    stop = should_stop or (lambda: False)
    decoder = FrameDecoder(handlers, should_stop=stop)
    async for raw in response.aiter_bytes():
        if stop():
            return decoder.completed_items
        if await decoder.feed(raw):
            break
    if stop():
        return decoder.completed_items
    return await decoder.finish()


__all__ = [
    "FrameDecoder",
    "StreamHandlers",
    "create_default_stream_handlers",
    "handle_event_stream",
    "parse_sse_frame",
    "process_content_chunk",
    "maybe_await",
]
