import asyncio
import json
import tempfile
from pathlib import Path

import httpx

from agent_bridge.domain.conversation import Message, ThreadMeta
from agent_bridge.domain.exceptions import PersistenceError, ValidationError
from agent_bridge.infrastructure.storage import (
    LocalStorageAdapter,
    NoopStorageAdapter,
    RemoteStorageAdapter,
    StorageConfig,
    create_storage_adapter,
)


def _msg(mid, content="hi", role="user"):
    return Message(id=mid, role=role, content=content)


# ---- 本地存储 ----


def test_local_store_keys_and_messages():
    with tempfile.TemporaryDirectory() as d:
        store = LocalStorageAdapter(root=Path(d), prefix="cedar")

        async def run():
            await store.persist_message("u1", "t1", _msg("m1"))
            await store.persist_message("u1", "t1", _msg("m2", "there", "assistant"))
            return await store.load_messages("u1", "t1")

        messages = asyncio.run(run())

        assert [m.id for m in messages] == ["m1", "m2"]
        assert (Path(d) / "cedar-thread-u1-t1.json").exists()
        assert store.threads_key(None) == "cedar-threads-default"
        assert store.thread_key(None, None) == "cedar-thread-default-default"


def test_local_store_persist_is_upsert():
    with tempfile.TemporaryDirectory() as d:
        store = LocalStorageAdapter(root=d)

        async def run():
            await store.persist_message(None, "t1", _msg("m1", "a"))
            await store.persist_message(None, "t1", _msg("m2", "b"))
            await store.persist_message(None, "t1", _msg("m1", "a2"))
            return await store.load_messages(None, "t1")

        assert [(m.id, m.content) for m in asyncio.run(run())] == [("m1", "a2"), ("m2", "b")]


def test_local_store_update_and_delete_message():
    with tempfile.TemporaryDirectory() as d:
        store = LocalStorageAdapter(root=d)

        async def run():
            await store.persist_messages(None, "t1", [_msg("m1", "a"), _msg("m2", "b")])
            await store.update_message(None, "t1", _msg("m1", "changed"))
            removed = await store.delete_message(None, "t1", "m2")
            return removed, await store.load_messages(None, "t1")

        removed, messages = asyncio.run(run())

        assert removed.id == "m2"
        assert [(m.id, m.content) for m in messages] == [("m1", "changed")]


def test_local_store_thread_metadata():
    with tempfile.TemporaryDirectory() as d:
        store = LocalStorageAdapter(root=d)

        async def run():
            await store.create_thread("u1", "t1", ThreadMeta(id="t1", title="First"))
            await store.create_thread("u1", "t1", ThreadMeta(id="t1", title="Dup"))
            await store.update_thread("u1", "t1", ThreadMeta(id="t1", title="First", last_message="bye"))
            await store.persist_message("u1", "t1", _msg("m1"))
            metas = await store.list_threads("u1")
            await store.delete_thread("u1", "t1")
            return metas, await store.list_threads("u1"), await store.load_messages("u1", "t1")

        metas, after, messages = asyncio.run(run())

        assert [(m.id, m.title, m.last_message) for m in metas] == [("t1", "First", "bye")]
        assert after == []
        assert messages == []


def test_local_store_corrupt_file_raises_persistence_error():
    with tempfile.TemporaryDirectory() as d:
        store = LocalStorageAdapter(root=d, prefix="p")
        (Path(d) / "p-thread-default-t1.json").write_text("{not json", encoding="utf-8")

        try:
            asyncio.run(store.load_messages(None, "t1"))
        except PersistenceError as e:
            assert e.code == "STORE_READ_ERROR"
        else:
            raise AssertionError("PersistenceError expected")


# ---- 远程存储 ----


class Resp:
    def __init__(self, data=None, status_code=200):
        self.status_code = status_code
        self._data = data
        self.content = json.dumps(data).encode() if data is not None else b""

    def json(self):
        return self._data


def make_client(calls, responses=None, error=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def request(self, method, url, **kw):
            calls.append((method, url, kw))
            if error is not None:
                raise error
            return (responses or {}).get((method, url), Resp(None))

    return Client


def test_remote_store_endpoints(monkeypatch):
    calls = []
    base = "http://store.local/api"
    responses = {
        ("GET", f"{base}/threads"): Resp({"threads": [{"id": "t1", "title": "One"}]}),
        ("GET", f"{base}/threads/t1"): Resp([{"id": "m1", "role": "user", "content": "hi"}]),
    }
    monkeypatch.setattr("httpx.AsyncClient", make_client(calls, responses))
    store = RemoteStorageAdapter(base + "/", headers={"X-Token": "t"})

    async def run():
        metas = await store.list_threads("u1")
        messages = await store.load_messages("u1", "t1")
        await store.persist_messages("u1", "t1", messages)
        await store.persist_message("u1", "t1", _msg("m2"))
        await store.update_message("u1", "t1", _msg("m2", "edited"))
        await store.delete_message("u1", "t1", "m2")
        await store.create_thread("u1", "t2", ThreadMeta(id="t2", title="Two"))
        await store.delete_thread("u1", "t2")
        return metas, messages

    metas, messages = asyncio.run(run())

    assert [m.title for m in metas] == ["One"]
    assert [m.content for m in messages] == ["hi"]
    assert [(method, url) for method, url, _ in calls] == [
        ("GET", f"{base}/threads"),
        ("GET", f"{base}/threads/t1"),
        ("POST", f"{base}/threads/t1"),
        ("POST", f"{base}/threads/t1/messages"),
        ("PUT", f"{base}/threads/t1/messages/m2"),
        ("DELETE", f"{base}/threads/t1/messages/m2"),
        ("POST", f"{base}/threads/t2/meta"),
        ("DELETE", f"{base}/threads/t2"),
    ]
    assert calls[0][2]["params"] == {"userId": "u1"}
    assert calls[2][2]["json"]["userId"] == "u1"
    assert calls[2][2]["json"]["messages"][0]["id"] == "m1"
    assert calls[0][2]["headers"]["X-Token"] == "t"


def test_remote_store_http_error(monkeypatch):
    calls = []
    base = "http://store.local"
    monkeypatch.setattr("httpx.AsyncClient", make_client(calls, {("GET", f"{base}/threads"): Resp({}, 500)}))

    try:
        asyncio.run(RemoteStorageAdapter(base).list_threads())
    except PersistenceError as e:
        assert e.code == "STORE_HTTP_ERROR"
        assert e.http_status == 500
    else:
        raise AssertionError("PersistenceError expected")


def test_remote_store_network_error(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", make_client([], error=httpx.ConnectError("refused")))

    try:
        asyncio.run(RemoteStorageAdapter("http://store.local").load_messages(None, "t1"))
    except PersistenceError as e:
        assert e.code == "STORE_NETWORK_ERROR"
    else:
        raise AssertionError("PersistenceError expected")


# ---- 空实现与工厂 ----


def test_noop_store():
    store = NoopStorageAdapter()
    msg = _msg("m1")

    assert store.supports_thread_metadata is False
    assert asyncio.run(store.list_threads()) == []
    assert asyncio.run(store.load_messages(None, "t1")) == []
    assert asyncio.run(store.persist_message(None, "t1", msg)) is msg


def test_create_storage_adapter():
    assert isinstance(create_storage_adapter(), NoopStorageAdapter)
    with tempfile.TemporaryDirectory() as d:
        assert isinstance(create_storage_adapter(StorageConfig(type="local", root=d)), LocalStorageAdapter)
    remote = create_storage_adapter(StorageConfig(type="remote", base_url="http://x"))
    assert isinstance(remote, RemoteStorageAdapter)
    custom = NoopStorageAdapter()
    assert create_storage_adapter(StorageConfig(type="custom", adapter=custom)) is custom

    try:
        create_storage_adapter(StorageConfig(type="remote"))
    except ValidationError:
        pass
    else:
        raise AssertionError("ValidationError expected")
