import asyncio
import logging

from agent_bridge.domain.conversation import DEFAULT_THREAD_ID, Message, ThreadMeta
from agent_bridge.domain.exceptions import PersistenceError
from agent_bridge.messages.store import ThreadMessageStore


class MemoryAdapter:
    """记录调用的内存适配器。"""

    supports_thread_metadata = True

    def __init__(self, metas=None, messages=None, fail=False):
        self.metas = list(metas or [])
        self.messages = dict(messages or {})
        self.calls = []
        self.fail = fail

    async def list_threads(self, user_id=None):
        self.calls.append(("list_threads", user_id))
        if self.fail:
            raise PersistenceError(code="STORE_HTTP_ERROR", message="down")
        return list(self.metas)

    async def load_messages(self, user_id, thread_id):
        self.calls.append(("load_messages", thread_id))
        return list(self.messages.get(thread_id, []))

    async def persist_message(self, user_id, thread_id, message):
        self.calls.append(("persist_message", thread_id, message.id))
        if self.fail:
            raise PersistenceError(code="STORE_HTTP_ERROR", message="down")
        self.messages.setdefault(thread_id, []).append(message)
        return message

    async def persist_messages(self, user_id, thread_id, messages):
        self.calls.append(("persist_messages", thread_id, len(messages)))
        self.messages[thread_id] = list(messages)

    async def update_message(self, user_id, thread_id, message):
        self.calls.append(("update_message", thread_id, message.id))
        return message

    async def delete_message(self, user_id, thread_id, message_id):
        self.calls.append(("delete_message", thread_id, message_id))
        return None

    async def create_thread(self, user_id, thread_id, meta):
        self.calls.append(("create_thread", thread_id, meta.title))
        self.metas.append(meta)
        return meta

    async def update_thread(self, user_id, thread_id, meta):
        self.calls.append(("update_thread", thread_id, meta.title, meta.last_message))
        return meta

    async def delete_thread(self, user_id, thread_id):
        self.calls.append(("delete_thread", thread_id))
        return None


def test_default_thread_exists():
    store = ThreadMessageStore()
    assert store.current_thread_id == DEFAULT_THREAD_ID
    assert store.get_all_thread_ids() == [DEFAULT_THREAD_ID]
    assert store.messages == []


def test_threads_are_isolated():
    store = ThreadMessageStore()
    store.add_message({"role": "user", "content": "hello"}, thread_id="t1")

    assert store.thread_map[DEFAULT_THREAD_ID].messages == []
    assert [m.content for m in store.get_thread_messages("t1")] == ["hello"]

    assert store.delete_thread("t1") is True
    assert "t1" not in store.get_all_thread_ids()


def test_delete_default_or_current_thread_warns(caplog):
    store = ThreadMessageStore()
    store.create_thread("t2")
    store.switch_thread("t2")
    before = store.get_all_thread_ids()

    with caplog.at_level(logging.WARNING, logger="agent_bridge"):
        assert store.delete_thread(DEFAULT_THREAD_ID) is False
        assert store.delete_thread("t2") is False

    assert store.get_all_thread_ids() == before
    assert "Cannot delete default thread" in caplog.text
    assert "Cannot delete current thread" in caplog.text


def test_unknown_thread_is_created_leniently():
    store = ThreadMessageStore()
    store.switch_thread("fresh")
    assert store.current_thread_id == "fresh"
    assert "fresh" in store.get_all_thread_ids()
    store.clear_messages("other")
    assert "other" in store.get_all_thread_ids()


def test_create_thread_generates_id():
    store = ThreadMessageStore()
    thread_id = store.create_thread()
    assert thread_id.startswith("thread-")
    assert store.get_thread(thread_id).messages == []


def test_append_to_latest_message_coalesces_assistant_text():
    store = ThreadMessageStore()
    store.add_message({"role": "user", "content": "q"})
    store.append_to_latest_message("Hel")
    store.append_to_latest_message("lo")

    messages = store.messages
    assert [(m.role, m.content) for m in messages] == [("user", "q"), ("assistant", "Hello")]

    store.add_message({"role": "assistant", "type": "action", "content": ""})
    store.append_to_latest_message("more")
    assert len(store.messages) == 4


def test_message_ids_and_lookup():
    store = ThreadMessageStore()
    first = store.add_message({"role": "user", "content": "a"})
    store.add_message({"role": "assistant", "content": "b"})

    assert first.id.startswith("message-")
    assert store.get_message_by_id(first.id).content == "a"
    assert [m.content for m in store.get_messages_by_role("assistant")] == ["b"]


def test_update_and_delete_message():
    store = ThreadMessageStore()
    msg = store.add_message({"role": "assistant", "type": "progress_update", "content": "", "state": "in_progress"})

    updated = store.update_message(msg.id, {"state": "complete"})
    assert updated.extra["state"] == "complete"
    assert store.update_message("missing", {"content": "x"}) is None

    assert store.delete_message(msg.id).id == msg.id
    assert store.delete_message(msg.id) is None
    assert store.messages == []


def test_subscribe_reports_changed_thread():
    store = ThreadMessageStore()
    changed = []
    unsubscribe = store.subscribe(changed.append)
    store.add_message({"role": "user", "content": "a"}, thread_id="t1")
    unsubscribe()
    store.add_message({"role": "user", "content": "b"})
    assert changed == ["t1"]


def test_persistence_creates_meta_and_updates_last_message():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(adapter=adapter, user_id="u1")

    async def run():
        store.add_message({"role": "user", "content": "What is the weather like on Mars in the summer?"}, thread_id="t1")
        store.add_message({"role": "assistant", "content": "Cold."}, thread_id="t1")
        await store.flush()

    asyncio.run(run())

    creates = [c for c in adapter.calls if c[0] == "create_thread"]
    assert creates == [("create_thread", "t1", "What is the weather like on Mars in the ")]
    updates = [c for c in adapter.calls if c[0] == "update_thread"]
    assert updates[-1] == ("update_thread", "t1", "What is the weather like on Mars in the ", "Cold.")
    assert [m.content for m in adapter.messages["t1"]] == [
        "What is the weather like on Mars in the summer?",
        "Cold.",
    ]


def test_known_thread_skips_listing():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(adapter=adapter, user_id="u1")

    async def run():
        for content in ["one", "two", "three"]:
            store.add_message({"role": "user", "content": content}, thread_id="t1")
        await store.flush()

    asyncio.run(run())

    assert [c for c in adapter.calls if c[0] == "list_threads"] == [("list_threads", "u1")]
    assert len([c for c in adapter.calls if c[0] == "persist_message"]) == 3


def test_persist_false_skips_adapter():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(adapter=adapter)
    store.add_message({"role": "assistant", "content": "x"}, persist=False)
    assert adapter.calls == []


def test_persistence_failure_keeps_memory_state(caplog):
    adapter = MemoryAdapter(fail=True)
    store = ThreadMessageStore(adapter=adapter)

    with caplog.at_level(logging.WARNING, logger="agent_bridge"):
        msg = store.add_message({"role": "user", "content": "kept"})

    assert store.get_message_by_id(msg.id) is not None
    assert "Persistence failed" in caplog.text


def test_persistence_runs_inline_without_loop():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(adapter=adapter)
    msg = store.add_message({"role": "user", "content": "sync"})
    assert ("persist_message", DEFAULT_THREAD_ID, msg.id) in adapter.calls


def test_adapter_swap_selects_first_thread_and_hydrates():
    stored = Message(id="m1", role="user", content="from storage")
    adapter = MemoryAdapter(metas=[ThreadMeta(id="t9", title="Saved")], messages={"t9": [stored]})
    store = ThreadMessageStore()

    async def run():
        store.set_storage_adapter(adapter)
        await store.flush()

    asyncio.run(run())

    assert store.current_thread_id == "t9"
    assert [m.content for m in store.messages] == ["from storage"]
    assert [m.id for m in store.thread_metas] == ["t9"]


def test_adapter_swap_without_threads_creates_default_meta():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(default_thread_title="Fresh Chat")

    async def run():
        store.set_storage_adapter(adapter)
        await store.flush()

    asyncio.run(run())

    assert store.current_thread_id == DEFAULT_THREAD_ID
    assert ("create_thread", DEFAULT_THREAD_ID, "Fresh Chat") in adapter.calls


def test_adapter_swap_failure_is_logged(caplog):
    adapter = MemoryAdapter(fail=True)
    store = ThreadMessageStore()

    async def run():
        store.set_storage_adapter(adapter)
        await store.flush()

    with caplog.at_level(logging.WARNING, logger="agent_bridge"):
        asyncio.run(run())

    assert store.current_thread_id == DEFAULT_THREAD_ID
    assert "Failed to load threads" in caplog.text


def test_delete_thread_forwards_to_adapter():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(adapter=adapter)
    store.create_thread("old")
    store.delete_thread("old")
    assert ("delete_thread", "old") in adapter.calls


def test_persist_message_after_stream():
    adapter = MemoryAdapter()
    store = ThreadMessageStore(adapter=adapter)
    msg = store.append_to_latest_message("partial", persist=False)
    assert adapter.calls == []

    store.persist_message(msg.id)

    assert ("persist_message", DEFAULT_THREAD_ID, msg.id) in adapter.calls
