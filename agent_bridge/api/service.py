"""对外 API 服务模块。

按配置组装一个可用的 AgentConnection，供宿主应用调用。
"""

from typing import Iterable, Optional

from agent_bridge.agents.connection import AgentConnection
from agent_bridge.config.settings import settings
from agent_bridge.domain.conversation import StorageAdapter
from agent_bridge.infrastructure.logging.logger import logger
from agent_bridge.infrastructure.storage import create_storage_adapter, storage_config_from_settings
from agent_bridge.messages.store import ThreadMessageStore
from agent_bridge.processors.defaults import DEFAULT_PROCESSORS
from agent_bridge.processors.registry import ProcessorEntry, ProcessorRegistry
from agent_bridge.providers.registry import ProviderConfig, config_from_settings
from agent_bridge.state.diff_history import DiffHistoryEngine


def create_connection(
    cfg=settings,
    provider_config: Optional[ProviderConfig] = None,
    storage: Optional[StorageAdapter] = None,
    processors: Optional[Iterable[ProcessorEntry]] = None,
) -> AgentConnection:
    """根据配置创建 AgentConnection。

    Args:
        cfg: 配置对象，默认使用全局 settings。
        provider_config: 显式的 Provider 配置；不提供时从 cfg 推导。
        storage: 显式的存储适配器；不提供时按 cfg.storage_type 创建。
        processors: 额外注册的处理器，同 (type, namespace) 会替换默认处理器。

    Returns:
        已完成存储水合调度的 AgentConnection。

    Raises:
        ValidationError: 存储配置不完整。
    """
    if provider_config is None:
        try:
            provider_config = config_from_settings(cfg)
        except KeyError as e:
            # 缺少 Provider 配置时仍可使用本地状态，调用时再报 ProviderNotConfiguredError
            logger.warning(
                "Provider not configured",
                extra={"extra": {"provider": cfg.default_provider, "error": str(e)}},
            )
            provider_config = None

    registry = ProcessorRegistry(DEFAULT_PROCESSORS)
    registry.register_many(processors or [])

    store = ThreadMessageStore(user_id=cfg.user_id, default_thread_title=cfg.default_thread_title)
    store.set_storage_adapter(storage or create_storage_adapter(storage_config_from_settings(cfg)))

    return AgentConnection(
        provider_config=provider_config,
        store=store,
        registry=registry,
        diff=DiffHistoryEngine(),
        cfg=cfg,
    )
