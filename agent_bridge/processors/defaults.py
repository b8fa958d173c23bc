"""默认处理器（namespace="default"，priority=0）。

- message: 把后端的 message 对象写成一条文本消息。
- action: 以直接模式执行命名 setter，并把动作记录为消息。
- setState: 以 diff 模式执行命名 setter，并把动作记录为消息。
- progress_update: 原地更新末尾进行中的进度消息，或追加一条新的。

execute 的 context 是 ProcessorContext，需要提供 store 与 diff。
"""

from typing import Any, Dict, List

from agent_bridge.processors.registry import ProcessorContext, ProcessorEntry


PROGRESS_STATES = ("in_progress", "complete", "error")


def _validate_message(payload: Any) -> bool:
    return isinstance(payload, dict) and isinstance(payload.get("content"), str)


def _execute_message(payload: Dict[str, Any], ctx: ProcessorContext) -> None:
    role = payload.get("role") or "assistant"
    if role not in ("user", "assistant", "bot"):
        role = "assistant"
    message = {"role": role, "type": "text", "content": payload["content"]}
    ctx.store.add_message(message, persist=ctx.persist, thread_id=ctx.thread_id)


def _validate_setter_call(payload: Any) -> bool:
    return (
        isinstance(payload, dict)
        and isinstance(payload.get("stateKey"), str)
        and isinstance(payload.get("setterKey"), str)
    )


def _setter_args(payload: Dict[str, Any]) -> List[Any]:
    args = payload.get("args")
    return list(args) if isinstance(args, list) else []


def _record(payload: Dict[str, Any], ctx: ProcessorContext) -> None:
    record = dict(payload)
    record.setdefault("role", "assistant")
    record.setdefault("content", "")
    record.pop("id", None)
    ctx.store.add_message(record, persist=ctx.persist, thread_id=ctx.thread_id)


def _execute_action(payload: Dict[str, Any], ctx: ProcessorContext) -> None:
    ctx.diff.execute_setter(payload["stateKey"], payload["setterKey"], *_setter_args(payload), is_diff=False)
    _record(payload, ctx)


def _execute_set_state(payload: Dict[str, Any], ctx: ProcessorContext) -> None:
    ctx.diff.execute_setter(payload["stateKey"], payload["setterKey"], *_setter_args(payload), is_diff=True)
    _record(payload, ctx)


def _validate_progress(payload: Any) -> bool:
    return (
        isinstance(payload, dict)
        and isinstance(payload.get("text"), str)
        and payload.get("state") in PROGRESS_STATES
    )


def _execute_progress(payload: Dict[str, Any], ctx: ProcessorContext) -> None:
    store = ctx.store
    messages = store.get_thread_messages(ctx.thread_id)
    last = messages[-1] if messages else None
    if last is not None and last.type == "progress_update" and last.extra.get("state") == "in_progress":
        store.update_message(last.id, {"text": payload["text"], "state": payload["state"]}, ctx.thread_id, ctx.persist)
        return
    store.add_message(
        {
            "role": "assistant",
            "type": "progress_update",
            "content": "",
            "text": payload["text"],
            "state": payload["state"],
        },
        persist=ctx.persist,
        thread_id=ctx.thread_id,
    )


message_processor = ProcessorEntry(type="message", execute=_execute_message, validate=_validate_message)
action_processor = ProcessorEntry(type="action", execute=_execute_action, validate=_validate_setter_call)
set_state_processor = ProcessorEntry(type="setState", execute=_execute_set_state, validate=_validate_setter_call)
progress_update_processor = ProcessorEntry(
    type="progress_update", execute=_execute_progress, validate=_validate_progress
)

DEFAULT_PROCESSORS = [message_processor, action_processor, set_state_processor, progress_update_processor]
