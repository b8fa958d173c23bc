import pydantic

from agent_bridge.config.settings import AgentBridgeSettings
from agent_bridge.infrastructure.storage import storage_config_from_settings
from agent_bridge.providers import MastraConfig, OpenAIConfig, config_from_settings


def test_defaults():
    cfg = AgentBridgeSettings(_env_file=None)
    assert cfg.default_thread_title == "New Chat"
    assert cfg.mastra_chat_path == "/chat"
    assert cfg.http_timeout >= 1.0


def test_short_api_key_rejected():
    try:
        AgentBridgeSettings(_env_file=None, openai_api_key="short")
    except pydantic.ValidationError as e:
        assert "too short" in str(e)
    else:
        raise AssertionError("ValidationError expected")


def test_yaml_config_file(monkeypatch, tmp_path):
    config_file = tmp_path / "agent.yaml"
    config_file.write_text(
        "default_provider: mastra\nmastra_base_url: http://mastra.local\nstorage_type: local\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("AGENT_CONFIG_FILE", str(config_file))
    monkeypatch.delenv("DEFAULT_PROVIDER", raising=False)

    cfg = AgentBridgeSettings(_env_file=None)

    assert cfg.default_provider == "mastra"
    provider = config_from_settings(cfg)
    assert isinstance(provider, MastraConfig)
    assert provider.base_url == "http://mastra.local"
    assert storage_config_from_settings(cfg).type == "local"


def test_env_overrides_yaml(monkeypatch, tmp_path):
    config_file = tmp_path / "agent.yaml"
    config_file.write_text("default_provider: mastra\n", encoding="utf-8")
    monkeypatch.setenv("AGENT_CONFIG_FILE", str(config_file))
    monkeypatch.setenv("DEFAULT_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-123456")

    cfg = AgentBridgeSettings(_env_file=None)

    assert cfg.default_provider == "openai"
    provider = config_from_settings(cfg)
    assert isinstance(provider, OpenAIConfig)
    assert provider.api_key == "sk-test-123456"


def test_missing_mastra_url_is_key_error():
    cfg = AgentBridgeSettings(_env_file=None, default_provider="mastra", mastra_base_url=None)
    try:
        config_from_settings(cfg)
    except KeyError:
        pass
    else:
        raise AssertionError("KeyError expected")
