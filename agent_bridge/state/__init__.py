"""可提议变更的状态：差异历史引擎与集合差异标注。"""

from agent_bridge.state.collection_diff import DiffChecker, add_diff_to_array_objs, add_diff_to_map_obj
from agent_bridge.state.diff_history import DiffHistoryEngine, DiffHistoryState, DiffMode, DiffState, Setter

__all__ = [
    "DiffChecker",
    "DiffHistoryEngine",
    "DiffHistoryState",
    "DiffMode",
    "DiffState",
    "Setter",
    "add_diff_to_array_objs",
    "add_diff_to_map_obj",
]
