import json
import os
from pathlib import Path
from typing import Any, List, Optional
from uuid import uuid4

from agent_bridge.config.settings import settings
from agent_bridge.domain.conversation import DEFAULT_THREAD_ID, Message, ThreadMeta
from agent_bridge.domain.exceptions import PersistenceError


DEFAULT_USER_ID = "default"


class LocalStorageAdapter:
    """目录形式的键值“设备存储”，每个键对应一个 JSON 文件。

    - {prefix}-threads-{user}: ThreadMeta 列表
    - {prefix}-thread-{user}-{thread}: Message 列表
    """

    supports_thread_metadata = True

    def __init__(self, root: str | Path | None = None, prefix: str | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._prefix = prefix or settings.storage_prefix

    # ---- 键 ----

    def threads_key(self, user_id: Optional[str]) -> str:
        return f"{self._prefix}-threads-{user_id or DEFAULT_USER_ID}"

    def thread_key(self, user_id: Optional[str], thread_id: Optional[str]) -> str:
        return f"{self._prefix}-thread-{user_id or DEFAULT_USER_ID}-{thread_id or DEFAULT_THREAD_ID}"

    # ---- 线程元数据 ----

    async def list_threads(self, user_id: Optional[str] = None) -> List[ThreadMeta]:
        return [ThreadMeta.from_dict(item) for item in self._read(self.threads_key(user_id))]

    async def create_thread(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        metas = await self.list_threads(user_id)
        if not any(m.id == thread_id for m in metas):
            metas.append(meta)
            self._write(self.threads_key(user_id), [m.to_dict() for m in metas])
        return meta

    async def update_thread(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        metas = await self.list_threads(user_id)
        for idx, existing in enumerate(metas):
            if existing.id == thread_id:
                metas[idx] = ThreadMeta.from_dict({**existing.to_dict(), **meta.to_dict()})
                break
        else:
            metas.append(meta)
        self._write(self.threads_key(user_id), [m.to_dict() for m in metas])
        return meta

    async def delete_thread(self, user_id: Optional[str], thread_id: str) -> Optional[ThreadMeta]:
        metas = await self.list_threads(user_id)
        removed = next((m for m in metas if m.id == thread_id), None)
        self._write(self.threads_key(user_id), [m.to_dict() for m in metas if m.id != thread_id])
        self._path(self.thread_key(user_id, thread_id)).unlink(missing_ok=True)
        return removed

    # ---- 消息 ----

    async def load_messages(self, user_id: Optional[str], thread_id: str) -> List[Message]:
        return [Message.from_dict(item) for item in self._read(self.thread_key(user_id, thread_id))]

    async def persist_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        key = self.thread_key(user_id, thread_id)
        stored = message.to_dict()
        messages = self._read(key)
        ids = [m.get("id") for m in messages]
        if message.id in ids:
            messages[ids.index(message.id)] = stored
        else:
            messages.append(stored)
        self._write(key, messages)
        return message

    async def persist_messages(self, user_id: Optional[str], thread_id: str, messages: List[Message]) -> None:
        self._write(self.thread_key(user_id, thread_id), [m.to_dict() for m in messages])

    async def update_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        key = self.thread_key(user_id, thread_id)
        updated = message.to_dict()
        self._write(key, [{**m, **updated} if m.get("id") == message.id else m for m in self._read(key)])
        return message

    async def delete_message(self, user_id: Optional[str], thread_id: str, message_id: str) -> Optional[Message]:
        key = self.thread_key(user_id, thread_id)
        messages = self._read(key)
        removed = next((m for m in messages if m.get("id") == message_id), None)
        self._write(key, [m for m in messages if m.get("id") != message_id])
        return Message.from_dict(removed) if removed else None

    # ---- 文件读写 ----

    def _path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    def _read(self, key: str) -> List[Any]:
        path = self._path(key)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e), key=key)
        return data if isinstance(data, list) else []

    def _write(self, key: str, data: List[Any]) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e), key=key)
