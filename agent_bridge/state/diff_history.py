"""差异历史引擎。

每个状态键维护一台状态机：

- diff_state: 当前的 (old_state, new_state, is_diff_mode)。
- history / redo_stack: 两个互不相交的栈；除 undo/redo 外的任何变更都会清空 redo_stack。
- diff_mode: defaultAccept 时对外暴露 new_state，holdAccept 时暴露 old_state。

所有操作都是同步的状态转换。“没有可用历史”不是异常：
accept/reject/undo/redo 在无事可做时返回 False。
"""

import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Literal, Optional

from agent_bridge.infrastructure.logging.logger import log_event


DiffMode = Literal["defaultAccept", "holdAccept"]

ComputeState = Callable[[Any, Any], Any]
SubscribeCallback = Callable[[str, "DiffHistoryState"], None]


@dataclass(frozen=True)
class DiffState:
    old_state: Any
    new_state: Any
    is_diff_mode: bool = False


@dataclass
class DiffHistoryState:
    diff_state: DiffState
    history: List[DiffState] = field(default_factory=list)
    redo_stack: List[DiffState] = field(default_factory=list)
    diff_mode: DiffMode = "defaultAccept"
    compute_state: Optional[ComputeState] = None


@dataclass(frozen=True)
class Setter:
    """命名的参数化变更函数：execute(current_state, set_value, *args)。"""

    name: str
    execute: Callable[..., Any]
    description: str = ""


class DiffHistoryEngine:
    """按键管理 DiffHistoryState 的容器，由宿主显式构造并注入各组件。"""

    def __init__(self) -> None:
        self._states: Dict[str, DiffHistoryState] = {}
        self._setters: Dict[str, Dict[str, Setter]] = {}
        self._on_change: Dict[str, Callable[[Any], None]] = {}
        self._subscribers: Dict[str, List[SubscribeCallback]] = {}

    # ---- 注册 ----

    def register_state(
        self,
        key: str,
        value: Any,
        diff_mode: DiffMode = "defaultAccept",
        compute_state: Optional[ComputeState] = None,
        setters: Optional[Dict[str, Any]] = None,
        on_change: Optional[Callable[[Any], None]] = None,
    ) -> DiffHistoryState:
        """首次注册时以 old_state = new_state = value 建立状态。

        重复注册是幂等的：保留已有历史，只更新 compute_state、setters 与 on_change。
        """

        existing = self._states.get(key)
        if existing is None:
            snapshot = copy.deepcopy(value)
            existing = DiffHistoryState(
                diff_state=DiffState(old_state=snapshot, new_state=snapshot),
                diff_mode=diff_mode,
                compute_state=compute_state,
            )
            self._states[key] = existing
            log_event(logging.DEBUG, "Registered diff state", {"state_key": key}, diff_mode=diff_mode)
        elif compute_state is not None:
            existing.compute_state = compute_state
        for name, setter in (setters or {}).items():
            if isinstance(setter, Setter):
                self._setters.setdefault(key, {})[name] = setter
            else:
                self.register_setter(key, name, setter)
        if on_change is not None:
            self._on_change[key] = on_change
        return existing

    def unregister_state(self, key: str) -> bool:
        removed = self._states.pop(key, None) is not None
        self._setters.pop(key, None)
        self._on_change.pop(key, None)
        self._subscribers.pop(key, None)
        return removed

    def register_setter(self, key: str, name: str, execute: Callable[..., Any], description: str = "") -> None:
        self._setters.setdefault(key, {})[name] = Setter(name=name, execute=execute, description=description)

    def get_setters(self, key: str) -> Dict[str, Setter]:
        return dict(self._setters.get(key, {}))

    def subscribe(self, key: str, callback: SubscribeCallback) -> Callable[[], None]:
        """订阅某个键的状态转换，返回取消订阅函数。"""

        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    # ---- 读取 ----

    def get_diff_history_state(self, key: str) -> Optional[DiffHistoryState]:
        return self._states.get(key)

    def snapshot(self, key: str) -> Optional[DiffHistoryState]:
        """返回某个键的浅拷贝快照（栈被复制，状态值共享）。"""

        state = self._states.get(key)
        if state is None:
            return None
        return replace(state, history=list(state.history), redo_stack=list(state.redo_stack))

    def keys(self) -> List[str]:
        return list(self._states)

    def get_clean_state(self, key: str) -> Any:
        state = self._states.get(key)
        if state is None:
            return None
        if state.diff_mode == "holdAccept":
            return copy.deepcopy(state.diff_state.old_state)
        return copy.deepcopy(state.diff_state.new_state)

    def get_computed_state(self, key: str) -> Any:
        """diff 模式下有 compute_state 时返回其投影，否则返回 clean state。

        返回值都是副本，调用方修改不会影响引擎内的状态。
        """

        state = self._states.get(key)
        if state is None:
            return None
        if state.compute_state is not None and state.diff_state.is_diff_mode:
            old_state = copy.deepcopy(state.diff_state.old_state)
            return state.compute_state(old_state, copy.deepcopy(state.diff_state.new_state))
        return self.get_clean_state(key)

    # ---- 状态转换 ----

    def set_state(self, key: str, value: Any) -> bool:
        """直接更新：old_state = new_state = value，退出 diff 模式。"""

        state = self._require(key, "set_state")
        if state is None:
            return False
        snapshot = copy.deepcopy(value)
        self._push(key, state, DiffState(old_state=snapshot, new_state=snapshot))
        return True

    def new_diff_state(self, key: str, value: Any) -> bool:
        """以 value 为提议值进入 diff 模式。

        已在 diff 模式时保留原 old_state（基线不随连续 diff 漂移），
        否则以当前 new_state 为新基线。
        """

        state = self._require(key, "new_diff_state")
        if state is None:
            return False
        prior = state.diff_state
        baseline = prior.old_state if prior.is_diff_mode else prior.new_state
        self._push(key, state, DiffState(old_state=baseline, new_state=copy.deepcopy(value), is_diff_mode=True))
        return True

    def set_diff_state(self, key: str, value: Any, is_diff: bool) -> bool:
        return self.new_diff_state(key, value) if is_diff else self.set_state(key, value)

    def accept_all_diffs(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None or not state.diff_state.is_diff_mode:
            return False
        accepted = state.diff_state.new_state
        self._push(key, state, DiffState(old_state=accepted, new_state=accepted))
        self._call_on_change(key)
        return True

    def reject_all_diffs(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None or not state.diff_state.is_diff_mode:
            return False
        original = state.diff_state.old_state
        self._push(key, state, DiffState(old_state=original, new_state=original))
        self._call_on_change(key)
        return True

    def undo(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None or not state.history:
            return False
        previous = state.history.pop()
        state.redo_stack.append(state.diff_state)
        state.diff_state = previous
        self._notify(key, state)
        self._call_on_change(key)
        return True

    def redo(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None or not state.redo_stack:
            return False
        following = state.redo_stack.pop()
        state.history.append(state.diff_state)
        state.diff_state = following
        self._notify(key, state)
        self._call_on_change(key)
        return True

    # ---- 自定义 setter ----

    def execute_setter(self, key: str, setter_key: str, *args: Any, is_diff: bool = False) -> bool:
        """调用命名 setter；is_diff 决定写入走 new_diff_state 还是 set_state。"""

        state = self._require(key, "execute_setter")
        if state is None:
            return False
        setter = self._setters.get(key, {}).get(setter_key)
        if setter is None:
            log_event(logging.WARNING, "Setter not found", {"state_key": key}, setter_key=setter_key)
            return False

        def set_value(value: Any) -> None:
            self.set_diff_state(key, value, is_diff)

        setter.execute(copy.deepcopy(state.diff_state.new_state), set_value, *args)
        log_event(logging.INFO, "Executed setter", {"state_key": key}, setter_key=setter_key, is_diff=is_diff)
        return True

    # ---- 内部 ----

    def _require(self, key: str, operation: str) -> Optional[DiffHistoryState]:
        state = self._states.get(key)
        if state is None:
            log_event(logging.WARNING, "No diff history state found for key", {"state_key": key}, operation=operation)
        return state

    def _push(self, key: str, state: DiffHistoryState, next_state: DiffState) -> None:
        state.history.append(state.diff_state)
        state.redo_stack.clear()
        state.diff_state = next_state
        self._notify(key, state)

    def _notify(self, key: str, state: DiffHistoryState) -> None:
        for callback in list(self._subscribers.get(key, [])):
            try:
                callback(key, state)
            except Exception as exc:
                log_event(logging.ERROR, "Diff state subscriber failed", {"state_key": key}, exc_info=exc)

    def _call_on_change(self, key: str) -> None:
        hook = self._on_change.get(key)
        if hook is not None:
            hook(self.get_clean_state(key))
