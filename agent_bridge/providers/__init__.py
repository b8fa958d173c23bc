"""LLM Provider 集成层。

该包下的模块负责：
- 帧解码 (event_stream)。
- 定义 Provider 抽象接口与流式句柄 (base)。
- 维护 Provider 配置 (registry)。
- 提供各后端的具体实现 (openai_client、mastra_client、custom_client)。
"""

from typing import Optional

from agent_bridge.config.settings import settings
from agent_bridge.providers.base import ProviderClient, StreamHandle
from agent_bridge.providers.custom_client import CustomClient
from agent_bridge.providers.mastra_client import MastraClient
from agent_bridge.providers.openai_client import OpenAIClient
from agent_bridge.providers.registry import (
    CustomConfig,
    MastraConfig,
    OpenAIConfig,
    ProviderConfig,
    ProviderName,
    config_from_settings,
)


def get_provider_client(config: ProviderConfig, cfg=settings) -> ProviderClient:
    """根据配置上的 provider 标签选择客户端实现。"""

    if config.provider == "openai":
        return OpenAIClient(cfg)
    if config.provider == "mastra":
        return MastraClient(cfg)
    if config.provider == "custom":
        return CustomClient()
    raise KeyError(f"Unknown provider: {config.provider!r}")


def create_provider(name: Optional[str] = None, cfg=settings) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    return get_provider_client(config_from_settings(cfg, name), cfg)


__all__ = [
    "CustomClient",
    "CustomConfig",
    "MastraClient",
    "MastraConfig",
    "OpenAIClient",
    "OpenAIConfig",
    "ProviderClient",
    "ProviderConfig",
    "ProviderName",
    "StreamHandle",
    "config_from_settings",
    "create_provider",
    "get_provider_client",
]
