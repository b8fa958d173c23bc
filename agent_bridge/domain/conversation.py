"""线程、消息与存储适配器契约。

- Message: 线程内的一条消息，类型相关的字段放在 extra 中。
- Thread: 一个独立寻址、有序的消息序列。
- ThreadMeta: 持久化的线程摘要，用于在不加载消息体的情况下列出线程。
- StorageAdapter: 持久化协议，由本地/远程/空实现提供。
"""

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .models import Role


DEFAULT_THREAD_ID = "default"

# Message 上的固定字段（序列化后的键名）
_MESSAGE_KEYS = {"id", "role", "type", "content", "createdAt", "metadata"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def generate_id(prefix: str) -> str:
    """生成形如 ``{prefix}-{毫秒时间戳}-{7 位 base36}`` 的标识。"""

    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


@dataclass
class Message:
    """一条消息。

    - id: 由生成器分配，在线程内唯一。
    - role: user/assistant/bot。
    - type: 消息类型标签（text/action/setState/progress_update/...）。
    - content: 纯文本内容。
    - extra: 类型相关字段，例如 action 的 stateKey/setterKey/args，
      progress_update 的 state/text。序列化时与固定字段平铺在同一层。
    """

    id: str
    role: Role
    content: str
    type: str = "text"
    created_at: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "role": self.role,
                "type": self.type,
                "content": self.content,
                "createdAt": self.created_at,
            }
        )
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            role=data.get("role") or "assistant",
            content=data.get("content") or "",
            type=data.get("type") or "text",
            created_at=data.get("createdAt") or utc_now_iso(),
            metadata=dict(data.get("metadata") or {}),
            extra={k: v for k, v in data.items() if k not in _MESSAGE_KEYS},
        )

    def patched(self, updates: Mapping[str, Any]) -> "Message":
        """返回合并了 updates 的新消息，未知键进入 extra。"""

        data = self.to_dict()
        data.update(updates)
        data["id"] = self.id
        return Message.from_dict(data)


@dataclass
class Thread:
    id: str
    messages: List[Message] = field(default_factory=list)
    last_loaded: str = field(default_factory=utc_now_iso)


@dataclass
class ThreadMeta:
    id: str
    title: str
    updated_at: str = field(default_factory=utc_now_iso)
    last_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "title": self.title, "updatedAt": self.updated_at}
        if self.last_message is not None:
            payload["lastMessage"] = self.last_message
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ThreadMeta":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            updated_at=data.get("updatedAt") or utc_now_iso(),
            last_message=data.get("lastMessage"),
        )


class StorageAdapter(Protocol):
    """消息持久化协议。

    必选子集：list_threads / load_messages / persist_message(s) /
    update_message / delete_message。

    supports_thread_metadata 为 True 时，额外提供 create_thread /
    update_thread / delete_thread；调用方必须先检查该标志。
    """

    supports_thread_metadata: bool

    async def list_threads(self, user_id: Optional[str] = None) -> List[ThreadMeta]:
        ...

    async def load_messages(self, user_id: Optional[str], thread_id: str) -> List[Message]:
        ...

    async def persist_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        ...

    async def persist_messages(self, user_id: Optional[str], thread_id: str, messages: List[Message]) -> None:
        ...

    async def update_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        ...

    async def delete_message(self, user_id: Optional[str], thread_id: str, message_id: str) -> Optional[Message]:
        ...

    async def create_thread(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        ...

    async def update_thread(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        ...

    async def delete_thread(self, user_id: Optional[str], thread_id: str) -> Optional[ThreadMeta]:
        ...
