"""响应处理器：注册表与默认处理器。"""

from agent_bridge.processors.defaults import DEFAULT_PROCESSORS
from agent_bridge.processors.registry import DispatchReport, ProcessorContext, ProcessorEntry, ProcessorRegistry

__all__ = ["DEFAULT_PROCESSORS", "DispatchReport", "ProcessorContext", "ProcessorEntry", "ProcessorRegistry"]
