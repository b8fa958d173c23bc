"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：初始化参数 > 环境变量 > .env > config.yaml。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AGENT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class AgentBridgeSettings(BaseSettings):
    """运行时配置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: Literal["openai", "mastra", "custom"] = Field(
        default="openai",
        description="默认使用的 Provider 类型",
    )
    default_model: str = Field(default="gpt-4o-mini", description="openai 调用的默认模型")

    # OpenAI 兼容接口
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口基础URL",
    )
    # Mastra 智能体后端
    mastra_base_url: Optional[str] = Field(default=None, description="Mastra 后端基础URL")
    mastra_api_key: Optional[str] = Field(default=None, description="Mastra 后端 API 密钥（可选）")
    mastra_chat_path: str = Field(default="/chat", description="Mastra 对话路由")
    mastra_voice_route: Optional[str] = Field(default=None, description="Mastra 语音路由")

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 消息存储 ----
    storage_type: Literal["local", "remote", "none"] = Field(
        default="none",
        description="消息存储适配器类型",
    )
    storage_root: str = Field(default=".storage", description="本地存储根目录")
    storage_prefix: str = Field(default="cedar", description="本地存储键前缀")
    storage_base_url: Optional[str] = Field(default=None, description="远程存储基础URL")
    storage_headers: Dict[str, str] = Field(default_factory=dict, description="远程存储附加请求头")
    user_id: Optional[str] = Field(default=None, description="当前用户标识")
    default_thread_title: str = Field(default="New Chat", description="自动创建线程时使用的标题")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("openai_api_key", "mastra_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            _load_config_from_yaml,
            file_secret_settings,
        )


settings = AgentBridgeSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = type(settings)
