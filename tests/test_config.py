"""Tests for configuration loading and the static config provider."""

import pydantic
import pytest
import yaml

from comrade_bridge.config import (
    AgentConfig,
    BridgeConfig,
    StaticConfigProvider,
    load_config,
)
from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.types import SecurityLevel


class TestAgentConfig:
    def test_defaults(self):
        a = AgentConfig()
        assert a.provider == "ollama"
        assert a.timeout == 30.0
        assert a.resolved_api_key() is None

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("COMRADE_TEST_KEY", "from-env")
        assert AgentConfig(api_key_env="COMRADE_TEST_KEY").resolved_api_key() == "from-env"
        assert AgentConfig(api_key="inline", api_key_env="COMRADE_TEST_KEY").resolved_api_key() == "inline"

    @pytest.mark.parametrize("kwargs", [
        {"temperature": 3},
        {"max_tokens": 0},
        {"timeout": -1},
    ])
    def test_validation(self, kwargs):
        with pytest.raises(pydantic.ValidationError):
            AgentConfig(**kwargs)


class TestBridgeConfig:
    def test_defaults(self):
        cfg = BridgeConfig()
        assert cfg.default_agent == "local"
        assert cfg.retry.max_attempts == 3
        assert cfg.stream.native is True

    def test_execution_context(self):
        cfg = BridgeConfig(security={"level": "restricted", "allow_dangerous": True}, workspace="/w")
        ctx = cfg.execution_context("coder")
        assert ctx.agent_id == "coder"
        assert ctx.level is SecurityLevel.RESTRICTED
        assert ctx.allow_dangerous
        assert ctx.workspace == "/w"


class TestStaticConfigProvider:
    def test_default_and_named(self):
        cfg = BridgeConfig(
            default_agent="a",
            agents={"a": AgentConfig(model="m1"), "b": AgentConfig(model="m2")},
        )
        provider = StaticConfigProvider(cfg)
        assert provider.get_agent().model == "m1"
        assert provider.get_agent("b").model == "m2"
        assert provider.agent_names() == ["a", "b"]

    def test_returns_copy(self):
        cfg = BridgeConfig()
        agent = StaticConfigProvider(cfg).get_agent()
        agent.model = "changed"
        assert cfg.agents["local"].model == "llama3"

    def test_unknown_agent(self):
        with pytest.raises(BridgeError) as exc_info:
            StaticConfigProvider(BridgeConfig()).get_agent("nope")
        assert exc_info.value.code == ErrorCode.CONFIGURATION_ERROR


class TestLoadConfig:
    def test_explicit_file(self, tmp_path):
        path = tmp_path / "bridge.yaml"
        path.write_text(yaml.dump({
            "default_agent": "cloud",
            "agents": {"cloud": {"provider": "openai", "model": "gpt-4o", "api_key_env": "OPENAI_API_KEY"}},
            "retry": {"max_attempts": 5},
            "stream": {"native": False},
        }))
        config, resolved = load_config(path)
        assert resolved == path.resolve()
        assert config.agents["cloud"].provider == "openai"
        assert config.retry.max_attempts == 5
        assert config.stream.native is False

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_discovered_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "comrade_bridge.yaml").write_text("system_prompt: be brief\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        config, resolved = load_config()
        assert config.system_prompt == "be brief"
        assert resolved == (tmp_path / "comrade_bridge.yaml").resolve()

    def test_defaults_when_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        config, resolved = load_config()
        assert resolved is None
        assert config.default_agent == "local"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config, _ = load_config(path)
        assert config.default_agent == "local"

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("agents:\n  x:\n    temperature: 9\n")
        with pytest.raises(pydantic.ValidationError):
            load_config(path)
