"""Provider 配置。

ProviderConfig 是带标签的联合类型：同一时刻只有一种 Provider 处于激活状态，
由 provider 字段区分。上层只持有配置对象，具体客户端由
agent_bridge.providers.get_provider_client 根据标签选择。
"""

from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, Union


ProviderName = Literal["openai", "mastra", "custom"]


@dataclass
class OpenAIConfig:
    """OpenAI 兼容 chat/completions 接口。"""

    api_key: str
    base_url: str = "https://api.openai.com/v1"
    provider: Literal["openai"] = "openai"


@dataclass
class MastraConfig:
    """Mastra 智能体后端：{base_url}{route} 与 {base_url}{route}/stream。"""

    base_url: str
    api_key: Optional[str] = None
    chat_path: str = "/chat"
    voice_route: Optional[str] = None
    provider: Literal["mastra"] = "mastra"


@dataclass
class CustomConfig:
    """完全由宿主回调驱动的 Provider。

    回调签名与 ProviderClient 对应方法一致（params, config[, handler]），
    可以是普通函数或协程函数；只提供部分能力时按
    structured → 普通调用 → 报错 的顺序回退。
    """

    call_llm: Optional[Callable[..., Any]] = None
    call_llm_structured: Optional[Callable[..., Any]] = None
    stream_llm: Optional[Callable[..., Any]] = None
    voice_llm: Optional[Callable[..., Any]] = None
    provider: Literal["custom"] = "custom"


ProviderConfig = Union[OpenAIConfig, MastraConfig, CustomConfig]


def config_from_settings(cfg, name: Optional[str] = None) -> ProviderConfig:
    """根据 Settings 构造 ProviderConfig，名称不区分大小写。"""

    provider_name = (name or getattr(cfg, "default_provider", "openai")).lower()
    if provider_name == "openai":
        return OpenAIConfig(api_key=cfg.openai_api_key or "", base_url=cfg.openai_base_url)
    if provider_name == "mastra":
        if not cfg.mastra_base_url:
            raise KeyError("mastra_base_url is not configured")
        return MastraConfig(
            base_url=cfg.mastra_base_url,
            api_key=cfg.mastra_api_key,
            chat_path=cfg.mastra_chat_path,
            voice_route=cfg.mastra_voice_route,
        )
    if provider_name == "custom":
        return CustomConfig()
    raise KeyError(f"Unknown provider: {name!r}")
