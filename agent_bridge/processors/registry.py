"""事件分发注册表。

按 type 分组保存处理器，每组按 priority 降序排列（同优先级按注册顺序）。
分发时所有通过 validate 的处理器都会执行，而不是“第一个匹配者独占”：

- validate 返回 False：静默跳过，不是错误。
- execute 抛出异常：包装为 ProcessorExecutionError 记录日志，
  同一事件的其余处理器照常执行，异常不会传出 dispatch。
- 同一 (type, namespace) 重复注册会原位替换，不产生重复行。
"""

import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from agent_bridge.domain.exceptions import ProcessorExecutionError
from agent_bridge.infrastructure.logging.logger import log_event


def _accept_all(payload: Any) -> bool:
    return True


@dataclass(frozen=True)
class ProcessorEntry:
    """一个已注册的处理器。

    - type: 事件/消息类型标签。
    - execute(payload, context): 产生副作用（写入消息、修改状态等）。
    - validate(payload) -> bool: 结构校验，不通过时跳过。
    - namespace: 同一 type 下区分不同来源的处理器。
    - priority: 越大越先执行。
    - render: 可选的渲染描述，交给宿主 UI 使用。
    """

    type: str
    execute: Callable[[Any, Any], Any]
    validate: Callable[[Any], bool] = _accept_all
    namespace: str = "default"
    priority: int = 0
    render: Optional[Any] = None


@dataclass
class ProcessorContext:
    """传给 execute 的状态句柄。

    persist 为 False 时（流式进行中）处理器写入的消息暂不持久化。
    """

    store: Any = None
    diff: Any = None
    thread_id: Optional[str] = None
    persist: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchReport:
    """一次 dispatch 的结果摘要。"""

    type: str
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[ProcessorExecutionError] = field(default_factory=list)

    @property
    def handled(self) -> bool:
        return bool(self.executed or self.errors)


@dataclass(frozen=True)
class _Row:
    seq: int
    entry: ProcessorEntry


class ProcessorRegistry:
    def __init__(self, processors: Optional[Iterable[ProcessorEntry]] = None):
        self._table: Dict[str, List[_Row]] = {}
        self._seq = itertools.count()
        if processors:
            self.register_many(processors)

    def register(self, entry: ProcessorEntry, event_type: Optional[str] = None) -> None:
        """注册处理器；提供 event_type 时覆盖 entry.type。"""

        if event_type is not None and event_type != entry.type:
            entry = replace(entry, type=event_type)
        rows = self._table.setdefault(entry.type, [])
        for idx, row in enumerate(rows):
            if row.entry.namespace == entry.namespace:
                # 替换时保留原注册顺序
                rows[idx] = _Row(row.seq, entry)
                break
        else:
            rows.append(_Row(next(self._seq), entry))
        rows.sort(key=lambda r: (-r.entry.priority, r.seq))
        log_event(
            logging.DEBUG,
            "Registered processor",
            {"processor_type": entry.type, "namespace": entry.namespace},
            priority=entry.priority,
        )

    def register_many(self, entries: Iterable[ProcessorEntry]) -> None:
        for entry in entries:
            self.register(entry)

    def unregister(self, event_type: str, namespace: Optional[str] = None) -> bool:
        """移除处理器；不指定 namespace 时移除该 type 的全部处理器。

        重复调用是安全的，返回是否实际移除了条目。
        """

        rows = self._table.get(event_type)
        if not rows:
            return False
        if namespace is None:
            del self._table[event_type]
            return True
        kept = [r for r in rows if r.entry.namespace != namespace]
        removed = len(kept) != len(rows)
        if kept:
            self._table[event_type] = kept
        else:
            del self._table[event_type]
        return removed

    def get_processors(self, event_type: str) -> List[ProcessorEntry]:
        return [r.entry for r in self._table.get(event_type, [])]

    def has_processor(self, event_type: str) -> bool:
        return bool(self._table.get(event_type))

    def types(self) -> List[str]:
        return list(self._table)

    def dispatch(self, event_type: str, payload: Any, context: Any = None) -> DispatchReport:
        """按优先级依次运行所有通过校验的处理器。"""

        report = DispatchReport(type=event_type)
        # 拷贝一份，处理器在执行中注册/注销不影响本次分发
        for entry in self.get_processors(event_type):
            log_ctx = {"processor_type": event_type, "namespace": entry.namespace}
            try:
                if not entry.validate(payload):
                    report.skipped.append(entry.namespace)
                    continue
                entry.execute(payload, context)
            except Exception as exc:
                error = ProcessorExecutionError(
                    code="PROCESSOR_FAILED",
                    message=f"Processor {event_type}/{entry.namespace} failed: {exc}",
                    processor_type=event_type,
                    namespace=entry.namespace,
                )
                error.__cause__ = exc
                report.errors.append(error)
                log_event(logging.ERROR, "Processor execution failed", log_ctx, exc_info=exc)
                continue
            report.executed.append(entry.namespace)
        if not report.executed and not report.errors:
            log_event(logging.DEBUG, "No processor handled event", {"processor_type": event_type}, skipped=report.skipped)
        return report
