"""按线程分区的消息存储。

- 消息按线程 id 分区保存；默认线程始终存在，且不能删除，当前线程也不能删除。
- 操作不存在的线程时自动创建（宽松创建策略），不会报错。
- append_to_latest_message 让一串流式 chunk 合并成一条不断增长的助手消息。
- messages 属性始终映射当前线程，便于按扁平列表访问。

持久化委托给 StorageAdapter，并且是“发出即忘”的：
内存中的修改立即可见，持久化失败只记录日志，不回滚。
有运行中的事件循环时持久化以后台任务执行（同一 store 内按提交顺序串行），
否则用 asyncio.run 当场执行；flush() 等待所有未完成的持久化任务。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

from agent_bridge.config.settings import settings
from agent_bridge.domain.conversation import (
    DEFAULT_THREAD_ID,
    Message,
    StorageAdapter,
    Thread,
    ThreadMeta,
    generate_id,
    utc_now_iso,
)
from agent_bridge.domain.models import Role
from agent_bridge.infrastructure.logging.logger import log_event


MessageInput = Union[Message, Mapping[str, Any]]

# 自动创建线程元数据时标题截取的长度
TITLE_LENGTH = 40


class ThreadMessageStore:
    def __init__(
        self,
        adapter: Optional[StorageAdapter] = None,
        user_id: Optional[str] = None,
        default_thread_title: Optional[str] = None,
    ):
        self._threads: Dict[str, Thread] = {DEFAULT_THREAD_ID: Thread(id=DEFAULT_THREAD_ID)}
        self._current_thread_id = DEFAULT_THREAD_ID
        self._adapter = adapter
        self._pending: Set[asyncio.Task] = set()
        self._tail: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[str], None]] = []
        self.user_id = user_id
        self.default_thread_title = default_thread_title or settings.default_thread_title
        self.thread_metas: List[ThreadMeta] = []

    # ---- 只读视图 ----

    @property
    def messages(self) -> List[Message]:
        """当前线程的消息（副本）。"""

        return list(self._threads[self._current_thread_id].messages)

    @property
    def thread_map(self) -> Dict[str, Thread]:
        return dict(self._threads)

    @property
    def current_thread_id(self) -> str:
        return self._current_thread_id

    @property
    def adapter(self) -> Optional[StorageAdapter]:
        return self._adapter

    def get_current_thread_id(self) -> str:
        return self._current_thread_id

    def get_thread(self, thread_id: Optional[str] = None) -> Optional[Thread]:
        return self._threads.get(thread_id or self._current_thread_id)

    def get_thread_messages(self, thread_id: Optional[str] = None) -> List[Message]:
        thread = self.get_thread(thread_id)
        return list(thread.messages) if thread else []

    def get_all_thread_ids(self) -> List[str]:
        return list(self._threads)

    def get_message_by_id(self, message_id: str, thread_id: Optional[str] = None) -> Optional[Message]:
        return next((m for m in self.get_thread_messages(thread_id) if m.id == message_id), None)

    def get_messages_by_role(self, role: Role, thread_id: Optional[str] = None) -> List[Message]:
        return [m for m in self.get_thread_messages(thread_id) if m.role == role]

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """注册变更回调（参数为发生变化的线程 id），返回取消订阅函数。"""

        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    # ---- 线程管理 ----

    def create_thread(self, thread_id: Optional[str] = None) -> str:
        thread_id = thread_id or generate_id("thread")
        if thread_id not in self._threads:
            self._threads[thread_id] = Thread(id=thread_id)
            log_event(logging.DEBUG, "Created thread", {"thread_id": thread_id})
        return thread_id

    def switch_thread(self, thread_id: str) -> None:
        self._ensure_thread(thread_id)
        self._current_thread_id = thread_id
        self._notify(thread_id)

    def delete_thread(self, thread_id: str) -> bool:
        """删除线程；默认线程与当前线程只告警，不做任何修改。"""

        if thread_id == DEFAULT_THREAD_ID:
            log_event(logging.WARNING, "Cannot delete default thread", {"thread_id": thread_id})
            return False
        if thread_id == self._current_thread_id:
            log_event(logging.WARNING, "Cannot delete current thread", {"thread_id": thread_id})
            return False
        if thread_id not in self._threads:
            return False
        del self._threads[thread_id]
        self.thread_metas = [m for m in self.thread_metas if m.id != thread_id]
        adapter = self._adapter
        if adapter is not None and adapter.supports_thread_metadata:
            self._schedule(adapter.delete_thread(self.user_id, thread_id), "delete_thread", thread_id)
        self._notify(thread_id)
        return True

    # ---- 消息操作 ----

    def add_message(self, message: MessageInput, persist: bool = True, thread_id: Optional[str] = None) -> Message:
        target = thread_id or self._current_thread_id
        created = self._build_message(message)
        self._ensure_thread(target).messages.append(created)
        if persist and self._adapter is not None:
            self._schedule(self._persist_new_message(target, created), "persist_message", target)
        self._notify(target)
        return created

    def append_to_latest_message(self, content: str, persist: bool = True, thread_id: Optional[str] = None) -> Message:
        """最后一条是助手的纯文本消息时原地追加，否则新建一条助手消息。"""

        target = thread_id or self._current_thread_id
        messages = self._ensure_thread(target).messages
        latest = messages[-1] if messages else None
        if latest is not None and latest.role == "assistant" and latest.type == "text":
            updated = self.update_message(latest.id, {"content": latest.content + content}, target, persist=persist)
            if updated is not None:
                return updated
        return self.add_message({"role": "assistant", "type": "text", "content": content}, persist, target)

    def update_message(
        self,
        message_id: str,
        updates: Mapping[str, Any],
        thread_id: Optional[str] = None,
        persist: bool = True,
    ) -> Optional[Message]:
        target = thread_id or self._current_thread_id
        messages = self._ensure_thread(target).messages
        for idx, existing in enumerate(messages):
            if existing.id == message_id:
                updated = existing.patched(updates)
                messages[idx] = updated
                if persist and self._adapter is not None:
                    self._schedule(self._adapter.update_message(self.user_id, target, updated), "update_message", target)
                self._notify(target)
                return updated
        return None

    def delete_message(self, message_id: str, thread_id: Optional[str] = None, persist: bool = True) -> Optional[Message]:
        target = thread_id or self._current_thread_id
        thread = self._ensure_thread(target)
        removed = next((m for m in thread.messages if m.id == message_id), None)
        if removed is None:
            return None
        thread.messages = [m for m in thread.messages if m.id != message_id]
        if persist and self._adapter is not None:
            self._schedule(self._adapter.delete_message(self.user_id, target, message_id), "delete_message", target)
        self._notify(target)
        return removed

    def clear_messages(self, thread_id: Optional[str] = None, persist: bool = True) -> None:
        target = thread_id or self._current_thread_id
        self._ensure_thread(target).messages = []
        if persist and self._adapter is not None:
            self._schedule(self._adapter.persist_messages(self.user_id, target, []), "persist_messages", target)
        self._notify(target)

    def set_messages(self, messages: List[Message], thread_id: Optional[str] = None) -> None:
        """整体替换线程消息（不触发持久化）。"""

        target = thread_id or self._current_thread_id
        thread = self._ensure_thread(target)
        thread.messages = list(messages)
        thread.last_loaded = utc_now_iso()
        self._notify(target)

    def persist_message(self, message_id: str, thread_id: Optional[str] = None) -> Optional[Message]:
        """把一条已在内存中的消息写入存储（流式结束后补写）。"""

        target = thread_id or self._current_thread_id
        message = self.get_message_by_id(message_id, target)
        if message is not None and self._adapter is not None:
            self._schedule(self._persist_new_message(target, message), "persist_message", target)
        return message

    def persist_thread(self, thread_id: Optional[str] = None) -> None:
        """把线程当前的全部消息批量写入存储。"""

        target = thread_id or self._current_thread_id
        if self._adapter is None:
            return
        self._schedule(
            self._adapter.persist_messages(self.user_id, target, self.get_thread_messages(target)),
            "persist_messages",
            target,
        )

    # ---- 存储适配器 ----

    def set_storage_adapter(self, adapter: Optional[StorageAdapter]) -> None:
        """切换存储适配器，随后加载线程元数据、选择线程并加载其消息。

        这一过程中的任何失败只记录日志，不抛给调用方。
        """

        self._adapter = adapter
        if adapter is not None:
            self._schedule(self._hydrate(), "hydrate", self._current_thread_id)

    async def load_threads(self) -> List[ThreadMeta]:
        if self._adapter is None:
            return []
        self.thread_metas = list(await self._adapter.list_threads(self.user_id))
        return self.thread_metas

    async def load_messages(self, thread_id: Optional[str] = None) -> List[Message]:
        target = thread_id or self._current_thread_id
        if self._adapter is None:
            return []
        loaded = await self._adapter.load_messages(self.user_id, target)
        if loaded:
            self.set_messages(loaded, target)
        return loaded

    async def flush(self) -> None:
        """等待所有未完成的持久化任务。"""

        while self._pending:
            await asyncio.wait(list(self._pending))

    # ---- 内部 ----

    def _ensure_thread(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            thread = Thread(id=thread_id)
            self._threads[thread_id] = thread
            log_event(logging.DEBUG, "Created thread", {"thread_id": thread_id}, implicit=True)
        return thread

    def _build_message(self, message: MessageInput) -> Message:
        if isinstance(message, Message):
            return message
        data = dict(message)
        data["id"] = data.get("id") or generate_id("message")
        data.setdefault("role", "assistant")
        return Message.from_dict(data)

    def _notify(self, thread_id: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(thread_id)
            except Exception as exc:
                log_event(logging.ERROR, "Message store listener failed", {"thread_id": thread_id}, exc_info=exc)

    async def _hydrate(self) -> None:
        log_ctx = {"thread_id": self._current_thread_id, "user_id": self.user_id}
        try:
            metas = await self.load_threads()
        except Exception as exc:
            log_event(logging.WARNING, "Failed to load threads", log_ctx, exc_info=exc)
            metas = []
        if metas:
            self.switch_thread(metas[0].id)
        else:
            self.switch_thread(DEFAULT_THREAD_ID)
            await self._create_default_meta(log_ctx)
        try:
            await self.load_messages(self._current_thread_id)
        except Exception as exc:
            log_event(logging.WARNING, "Failed to hydrate messages", log_ctx, exc_info=exc)

    async def _create_default_meta(self, log_ctx: Dict[str, Any]) -> None:
        adapter = self._adapter
        if adapter is None or not adapter.supports_thread_metadata:
            return
        meta = ThreadMeta(id=DEFAULT_THREAD_ID, title=self.default_thread_title)
        try:
            await adapter.create_thread(self.user_id, DEFAULT_THREAD_ID, meta)
        except Exception as exc:
            log_event(logging.WARNING, "Failed to create default thread", log_ctx, exc_info=exc)
            return
        self.thread_metas = [meta]

    async def _persist_new_message(self, thread_id: str, message: Message) -> None:
        adapter = self._adapter
        if adapter is None:
            return
        title = (message.content or "Chat")[:TITLE_LENGTH]
        if adapter.supports_thread_metadata and not any(m.id == thread_id for m in self.thread_metas):
            known = await adapter.list_threads(self.user_id)
            if not any(m.id == thread_id for m in known):
                created = await adapter.create_thread(self.user_id, thread_id, ThreadMeta(id=thread_id, title=title))
                self.thread_metas.append(created)
        await adapter.persist_message(self.user_id, thread_id, message)
        if adapter.supports_thread_metadata:
            existing = next((m for m in self.thread_metas if m.id == thread_id), None)
            meta = ThreadMeta(
                id=thread_id,
                title=existing.title if existing else title,
                last_message=message.content,
            )
            await adapter.update_thread(self.user_id, thread_id, meta)
            self.thread_metas = [meta if m.id == thread_id else m for m in self.thread_metas]
            if existing is None:
                self.thread_metas.append(meta)

    def _schedule(self, coro: Awaitable[Any], operation: str, thread_id: str) -> None:
        """执行一次持久化，失败只记录日志。"""

        previous = self._tail

        async def guarded() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                await coro
            except Exception as exc:
                log_event(
                    logging.WARNING,
                    "Persistence failed",
                    {"thread_id": thread_id, "operation": operation},
                    exc_info=exc,
                    code=getattr(exc, "code", "PERSISTENCE_FAILED"),
                )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            previous = None
            asyncio.run(guarded())
            return
        if previous is not None and previous.get_loop() is not loop:
            previous = None
        task = loop.create_task(guarded())
        self._tail = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
