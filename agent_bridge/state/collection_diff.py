"""集合的结构化差异标注。

比较新旧两组带标识的记录（列表按 id 字段匹配，字典按键匹配），
在每条记录的 diff_path 位置写入 diff 标记：

- added: 只存在于新集合。
- changed: 两边都有但字段不同（整条记录比较，受 DiffChecker 约束）。
- removed: 只存在于旧集合，保留在结果中而不是直接丢弃。

未变化的记录原样返回；任何输入都不会被修改。
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Mapping, Optional, Sequence


DIFF_KEY = "diff"

DiffTag = Literal["added", "changed", "removed"]


@dataclass
class DiffChecker:
    """限定哪些字段参与变化检测。

    fields 为 JSON Pointer（可省略开头的斜杠）：
    - ignore: 这些字段下的变化不算变化。
    - listen: 只有这些字段下的变化才算变化。
    """

    type: Literal["ignore", "listen"]
    fields: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.fields = [f if f.startswith("/") else f"/{f}" for f in self.fields]

    def is_relevant(self, pointer: str) -> bool:
        covered = any(pointer == f or pointer.startswith(f + "/") for f in self.fields)
        return not covered if self.type == "ignore" else covered


def _split_path(diff_path: str) -> List[str]:
    if not diff_path or diff_path == "/":
        return []
    return diff_path.lstrip("/").split("/")


def _strip_markers(record: Any, parts: List[str]) -> Any:
    """去掉根与 diff_path 处已有的 diff 标记。"""

    if not isinstance(record, dict):
        return record
    result = {k: v for k, v in record.items() if k != DIFF_KEY}
    if parts and isinstance(result.get(parts[0]), dict):
        result[parts[0]] = _strip_markers(result[parts[0]], parts[1:])
    return result


def _changed_pointers(old: Any, new: Any, pointer: str = "") -> Iterator[str]:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
            child = f"{pointer}/{key}"
            if key not in old or key not in new:
                yield child
            else:
                yield from _changed_pointers(old[key], new[key], child)
        return
    if isinstance(old, list) and isinstance(new, list):
        for idx in range(max(len(old), len(new))):
            child = f"{pointer}/{idx}"
            if idx >= len(old) or idx >= len(new):
                yield child
            else:
                yield from _changed_pointers(old[idx], new[idx], child)
        return
    if old != new:
        yield pointer or "/"


def has_changes(old: Any, new: Any, diff_path: str = "", diff_checker: Optional[DiffChecker] = None) -> bool:
    parts = _split_path(diff_path)
    pointers = _changed_pointers(_strip_markers(old, parts), _strip_markers(new, parts))
    if diff_checker is None:
        return any(True for _ in pointers)
    return any(diff_checker.is_relevant(p) for p in pointers)


def set_value_at_path(record: Any, diff_path: str, tag: str) -> Any:
    """返回在 diff_path 处写入 diff 标记的副本。"""

    parts = _split_path(diff_path)
    if not parts:
        return {**record, DIFF_KEY: tag}
    result = copy.deepcopy(record)
    current = result
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    last = parts[-1]
    target = current.get(last)
    current[last] = {**(target if isinstance(target, dict) else {}), DIFF_KEY: tag}
    return result


def _tag(old_item: Any, new_item: Any, diff_path: str, diff_checker: Optional[DiffChecker]) -> Optional[str]:
    if old_item is None:
        return "added"
    if has_changes(old_item, new_item, diff_path, diff_checker):
        return "changed"
    return None


def add_diff_to_array_objs(
    old_state: Sequence[Dict[str, Any]],
    new_state: Sequence[Dict[str, Any]],
    id_field: str = "id",
    diff_path: str = "",
    diff_checker: Optional[DiffChecker] = None,
) -> List[Dict[str, Any]]:
    """按 id 字段比较两个记录列表并标注差异。

    结果保持新列表的顺序；被删除的记录插在旧列表中离它最近的、
    仍然存在的前一个记录之后（没有则放在最前面）。
    """

    old_by_id = {item.get(id_field): item for item in old_state}
    new_ids = {item.get(id_field) for item in new_state}

    # 被删除记录按锚点分组：锚点为旧列表中前一个仍存在的记录 id
    removed_after: Dict[Any, List[Dict[str, Any]]] = {}
    leading: List[Dict[str, Any]] = []
    anchor = None
    anchored = False
    for item in old_state:
        item_id = item.get(id_field)
        if item_id in new_ids:
            anchor, anchored = item_id, True
            continue
        tagged = set_value_at_path(item, diff_path, "removed")
        if anchored:
            removed_after.setdefault(anchor, []).append(tagged)
        else:
            leading.append(tagged)

    result: List[Dict[str, Any]] = list(leading)
    for item in new_state:
        item_id = item.get(id_field)
        tag = _tag(old_by_id.get(item_id), item, diff_path, diff_checker)
        result.append(set_value_at_path(item, diff_path, tag) if tag else item)
        result.extend(removed_after.pop(item_id, []))
    return result


def add_diff_to_map_obj(
    old_state: Mapping[Any, Dict[str, Any]],
    new_state: Mapping[Any, Dict[str, Any]],
    diff_path: str = "",
    diff_checker: Optional[DiffChecker] = None,
) -> Dict[Any, Dict[str, Any]]:
    """按键比较两个记录字典并标注差异，被删除的键追加在末尾。"""

    result: Dict[Any, Dict[str, Any]] = {}
    for key, item in new_state.items():
        tag = _tag(old_state.get(key), item, diff_path, diff_checker)
        result[key] = set_value_at_path(item, diff_path, tag) if tag else item
    for key, item in old_state.items():
        if key not in new_state:
            result[key] = set_value_at_path(item, diff_path, "removed")
    return result
