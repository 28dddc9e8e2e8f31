"""Configuration loading and validation."""

from pathlib import Path

import pytest

from config import Config, ConfigurationLoadError

pytestmark = pytest.mark.asyncio

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / ".example" / "config.toml"


async def test_example_config_loads():
    config = Config(EXAMPLE_CONFIG)
    await config.initialize()

    assert config.config_opened
    assert config.config["server"]["websocket_port"] == 8765
    assert config.config["events"]["heartbeat_interval"] == 25
    assert len(config.config["ice"]["servers"]) == 5


async def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigurationLoadError):
        await Config(tmp_path / "missing.toml").initialize()


async def test_invalid_toml(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text("[server\nhost = ")

    with pytest.raises(ConfigurationLoadError):
        await Config(path).initialize()


async def test_port_out_of_range(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text(EXAMPLE_CONFIG.read_text().replace("http_port = 5000", "http_port = 70000"))

    with pytest.raises(ConfigurationLoadError):
        await Config(path).initialize()


async def test_ice_server_with_credentials(tmp_path: Path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[server]
host = "127.0.0.1"
websocket_port = 0
http_port = 0

[events]
heartbeat_interval = 5
channel_backlog = 8

[[ice.servers]]
urls = ["turn:turn.example.org:3478", "turns:turn.example.org:5349"]
username = "relay"
credential = "hunter2"
"""
    )

    config = Config(path)
    await config.initialize()

    assert config.config["ice"]["servers"][0]["username"] == "relay"
