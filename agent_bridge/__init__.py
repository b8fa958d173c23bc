"""Agent Bridge 顶层包。

该包提供宿主应用与生成式智能体后端之间的客户端运行时，
包括流式帧解码、Provider 适配、事件分发注册表、
带 diff 历史的状态引擎，以及按线程分区的消息存储。
"""

from agent_bridge.agents.connection import AgentConnection
from agent_bridge.api.service import create_connection

__all__ = ["AgentConnection", "create_connection"]
