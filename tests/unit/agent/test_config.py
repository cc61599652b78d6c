"""
配置加载测试
"""

import os

import pytest
import yaml

from seacomm_agent import config as config_module
from seacomm_agent.config import AgentConfig, init_agent_config, merge_transports
from seacomm_agent.domain.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """隔离 SEACOMM_* 环境变量与全局配置"""
    for key in list(os.environ):
        if key.startswith(config_module.ENV_PREFIX):
            monkeypatch.delenv(key)
    monkeypatch.setattr(config_module, "_ENV_LOADED", True)
    monkeypatch.setattr(config_module, "_agent_config", None)


class TestAgentConfig:
    """AgentConfig 测试"""

    def test_defaults(self):
        config = AgentConfig()

        assert config.queue_capacity == 1000
        assert config.max_attempts == 3
        assert config.retry_base_delay == 5.0
        assert list(config.enabled_transports) == ["radio", "cellular", "satellite"]
        assert config.queue_dir == os.path.join(config.data_dir, "queue")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"queue_capacity": 0},
            {"max_attempts": -1},
            {"send_timeout": 0},
            {"retry_base_delay": -1},
            {"time_scale": -0.5},
            {"health_port": 70000},
            {"transports": {"radio": "on"}},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigError):
            AgentConfig(**overrides)

    def test_from_dict_merges_transports(self):
        config = AgentConfig.from_dict({
            "name": "vessel-042",
            "unknown": "ignored",
            "transports": {"wifi": {"enabled": True}},
        })

        assert config.name == "vessel-042"
        assert config.transports["wifi"] == {"enabled": True, "ssid": "harbor"}
        assert "radio" in config.transports
        assert "wifi" in config.enabled_transports

    def test_merge_transports_rejects_non_mapping(self):
        with pytest.raises(ConfigError):
            merge_transports({}, {"radio": ["bad"]})

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "agent.yaml"
        config = AgentConfig(name="vessel-007", queue_capacity=42, time_scale=0.5)

        config.save_to_file(path)
        loaded = AgentConfig.load_from_file(path)

        assert loaded.to_dict() == config.to_dict()

    @pytest.mark.asyncio
    async def test_save_and_load_async(self, tmp_path):
        path = tmp_path / "agent.yaml"
        config = AgentConfig(max_attempts=7)

        await config.save_to_file_async(path)
        loaded = await AgentConfig.load_from_file_async(path)

        assert loaded.max_attempts == 7

    def test_load_missing_file_returns_defaults(self, tmp_path):
        config = AgentConfig.load_from_file(tmp_path / "missing.yaml")
        assert config.queue_capacity == 1000
        assert config.name == "vessel-unit-001"


class TestInitAgentConfig:
    """配置来源合并测试"""

    def write_config(self, tmp_path, data) -> str:
        path = tmp_path / "agent.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return str(path)

    def test_file_env_cli_precedence(self, tmp_path, monkeypatch):
        path = self.write_config(tmp_path, {
            "name": "from-file",
            "queue_capacity": 50,
            "max_attempts": 5,
            "transports": {"cellular": {"carrier": "telenor"}},
        })
        monkeypatch.setenv("SEACOMM_QUEUE_CAPACITY", "60")
        monkeypatch.setenv("SEACOMM_NAME", "from-env")
        monkeypatch.setenv("SEACOMM_CELLULAR_APN", "vessel.apn")

        config = init_agent_config(path, name="from-cli", data_dir=str(tmp_path / "data"))

        assert config.name == "from-cli"
        assert config.queue_capacity == 60
        assert config.max_attempts == 5
        assert config.transports["cellular"]["carrier"] == "telenor"
        assert config.transports["cellular"]["apn"] == "vessel.apn"
        assert config.transports["cellular"]["min_signal_quality"] == 15
        assert os.path.isdir(config.queue_dir)
        assert config_module.get_agent_config() is config

    def test_none_overrides_ignored(self, tmp_path):
        config = init_agent_config(None, name=None, data_dir=str(tmp_path))
        assert config.name == "vessel-unit-001"

    def test_env_bool_and_float(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SEACOMM_WIFI_ENABLED", "yes")
        monkeypatch.setenv("SEACOMM_TIME_SCALE", "0.01")

        config = init_agent_config(None, data_dir=str(tmp_path))

        assert "wifi" in config.enabled_transports
        assert config.time_scale == 0.01

    def test_invalid_env_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SEACOMM_QUEUE_CAPACITY", "many")
        with pytest.raises(ConfigError) as exc_info:
            init_agent_config(None, data_dir=str(tmp_path))
        assert exc_info.value.config_key == "SEACOMM_QUEUE_CAPACITY"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError):
            init_agent_config(str(tmp_path / "missing.yaml"), data_dir=str(tmp_path))

    def test_file_must_be_mapping(self, tmp_path):
        path = self.write_config(tmp_path, ["not", "a", "mapping"])
        with pytest.raises(ConfigError):
            init_agent_config(path, data_dir=str(tmp_path))

    def test_relative_data_dir_resolved_against_project_root(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module, "PROJECT_ROOT", tmp_path)

        config = init_agent_config(None, data_dir="var/agent")

        assert config.data_dir == str(tmp_path / "var" / "agent")
