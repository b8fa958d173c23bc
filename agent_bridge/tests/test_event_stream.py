import asyncio
import json

from agent_bridge.providers.event_stream import (
    FrameDecoder,
    StreamHandlers,
    handle_event_stream,
    parse_sse_frame,
)
from agent_bridge.domain.exceptions import TransportError


class Recorder:
    def __init__(self):
        self.chunks = []
        self.objects = []
        self.completed = None

    def handlers(self):
        return StreamHandlers(
            handle_chunk=self.chunks.append,
            handle_object=self.objects.append,
            handle_complete=self._complete,
        )

    def _complete(self, items):
        self.completed = list(items)


class FakeResponse:
    def __init__(self, parts, status_code=200):
        self.status_code = status_code
        self._parts = parts

    async def aiter_bytes(self):
        for part in self._parts:
            yield part


def _frame(data):
    return f"data: {data}\n\n"


def test_parse_sse_frame_defaults_to_message():
    assert parse_sse_frame("data: hello") == ("message", "hello")
    assert parse_sse_frame("event: custom\ndata: a\ndata: b") == ("custom", "a\nb")


def test_plain_text_chunks_and_done_sentinel():
    rec = Recorder()
    body = _frame("Hel") + _frame("lo") + _frame("[DONE]")

    items = asyncio.run(handle_event_stream(FakeResponse([body.encode()]), rec.handlers()))

    assert rec.chunks == ["Hel", "lo"]
    assert rec.objects == []
    assert rec.completed == ["Hello"]
    assert items == ["Hello"]


def test_partial_frames_are_buffered():
    rec = Recorder()
    parts = [b"data: Hel", b"lo wor", b"ld\n", b"\n"]

    asyncio.run(handle_event_stream(FakeResponse(parts), rec.handlers()))

    assert rec.chunks == ["Hello world"]
    assert rec.completed == ["Hello world"]


def test_crlf_boundary_split_across_reads():
    rec = Recorder()
    parts = [b"data: A\r\n\r", b"\ndata: B\r\n\r\n"]

    asyncio.run(handle_event_stream(FakeResponse(parts), rec.handlers()))

    assert rec.chunks == ["A", "B"]
    assert rec.completed == ["AB"]


def test_multibyte_split_across_reads():
    rec = Recorder()
    raw = _frame("你好").encode("utf-8")
    parts = [raw[:7], raw[7:]]

    asyncio.run(handle_event_stream(FakeResponse(parts), rec.handlers()))

    assert rec.chunks == ["你好"]


def test_openai_deltas_and_role_only_delta():
    rec = Recorder()
    frames = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Hi"}}]},
        {"choices": [{"delta": {"content": " there"}}]},
    ]
    body = "".join(_frame(json.dumps(f)) for f in frames) + _frame("[DONE]")

    asyncio.run(handle_event_stream(FakeResponse([body.encode()]), rec.handlers()))

    assert rec.chunks == ["Hi", " there"]
    assert rec.completed == ["Hi there"]


def test_tool_call_delta_is_object():
    rec = Recorder()
    delta = {"tool_calls": [{"index": 0, "function": {"name": "f", "arguments": "{}"}}]}
    body = _frame(json.dumps({"choices": [{"delta": delta}]}))

    asyncio.run(handle_event_stream(FakeResponse([body.encode()]), rec.handlers()))

    assert rec.objects == [delta]
    assert rec.completed == [delta]


def test_typed_object_splits_text_items():
    rec = Recorder()
    obj = {"type": "setState", "stateKey": "todos", "setterKey": "add"}
    body = _frame("before") + _frame(json.dumps(obj)) + _frame("after")

    asyncio.run(handle_event_stream(FakeResponse([body.encode()]), rec.handlers()))

    assert rec.objects == [obj]
    assert rec.completed == ["before", obj, "after"]


def test_direct_content_and_escaped_newlines():
    rec = Recorder()
    body = _frame(json.dumps({"content": "line1\\nline2"}))

    asyncio.run(handle_event_stream(FakeResponse([body.encode()]), rec.handlers()))

    assert rec.chunks == ["line1\nline2"]


def test_done_event_stops_processing():
    rec = Recorder()
    body = _frame("a") + "event: done\ndata: {}\n\n" + _frame("ignored")

    asyncio.run(handle_event_stream(FakeResponse([body.encode()]), rec.handlers()))

    assert rec.chunks == ["a"]
    assert rec.completed == ["a"]


def test_non_success_status_raises_without_events():
    rec = Recorder()

    try:
        asyncio.run(handle_event_stream(FakeResponse([b"data: x\n\n"], status_code=500), rec.handlers()))
    except TransportError as e:
        assert e.code == "TRANSPORT_ERROR"
        assert e.http_status == 500
    else:
        raise AssertionError("TransportError expected")
    assert rec.chunks == []
    assert rec.completed is None


def test_should_stop_suppresses_completion():
    rec = Recorder()
    stopped = {"value": False}

    def chunk(text):
        rec.chunks.append(text)
        stopped["value"] = True

    handlers = StreamHandlers(handle_chunk=chunk, handle_object=rec.objects.append, handle_complete=rec._complete)
    body = _frame("one") + _frame("two")

    asyncio.run(handle_event_stream(FakeResponse([body.encode()]), handlers, should_stop=lambda: stopped["value"]))

    assert rec.chunks == ["one"]
    assert rec.completed is None


def test_decoder_accepts_async_handlers():
    seen = []

    async def chunk(text):
        await asyncio.sleep(0)
        seen.append(text)

    async def run():
        decoder = FrameDecoder(StreamHandlers(handle_chunk=chunk, handle_object=seen.append, handle_complete=seen.append))
        await decoder.feed(b"data: x\n\n")
        return await decoder.finish()

    assert asyncio.run(run()) == ["x"]
    assert seen == ["x", ["x"]]
