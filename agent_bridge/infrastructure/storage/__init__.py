"""消息存储适配器。

- local: 目录中的 JSON 文件（local_store）。
- remote: HTTP 后端（remote_store）。
- none: 不持久化（noop_store）。
- custom: 宿主提供的任意 StorageAdapter 实现。
"""

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional

from agent_bridge.config.settings import settings
from agent_bridge.domain.conversation import StorageAdapter
from agent_bridge.domain.exceptions import ValidationError
from agent_bridge.infrastructure.storage.local_store import LocalStorageAdapter
from agent_bridge.infrastructure.storage.noop_store import NoopStorageAdapter
from agent_bridge.infrastructure.storage.remote_store import RemoteStorageAdapter


@dataclass
class StorageConfig:
    type: Literal["local", "remote", "none", "custom"] = "none"
    root: Optional[str] = None
    prefix: Optional[str] = None
    base_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    adapter: Optional[StorageAdapter] = None


def storage_config_from_settings(cfg=settings) -> StorageConfig:
    return StorageConfig(
        type=cfg.storage_type,
        root=cfg.storage_root,
        prefix=cfg.storage_prefix,
        base_url=cfg.storage_base_url,
        headers=dict(cfg.storage_headers),
        timeout=cfg.http_timeout,
    )


def create_storage_adapter(config: Optional[StorageConfig] = None) -> StorageAdapter:
    """根据配置创建适配器；未提供配置时不持久化。"""

    if config is None or config.type == "none":
        return NoopStorageAdapter()
    if config.type == "local":
        return LocalStorageAdapter(root=config.root, prefix=config.prefix)
    if config.type == "remote":
        if not config.base_url:
            raise ValidationError(code="VALIDATION_ERROR", message="Remote storage requires base_url")
        return RemoteStorageAdapter(config.base_url, headers=config.headers, timeout=config.timeout)
    if config.type == "custom":
        if config.adapter is None:
            raise ValidationError(code="VALIDATION_ERROR", message="Custom storage requires an adapter")
        return config.adapter
    raise ValidationError(code="VALIDATION_ERROR", message=f"Unknown storage type: {config.type!r}")


__all__ = [
    "LocalStorageAdapter",
    "NoopStorageAdapter",
    "RemoteStorageAdapter",
    "StorageConfig",
    "create_storage_adapter",
    "storage_config_from_settings",
]
