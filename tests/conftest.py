"""Shared fixtures for PairCall tests."""

import pytest

from call_manager import CallManager
from server_data import ServerData


@pytest.fixture
def config() -> dict:
    return {
        "server": {"host": "127.0.0.1", "websocket_port": 0, "http_port": 0},
        "events": {"heartbeat_interval": 1, "channel_backlog": 16},
        "ice": {"servers": [{"urls": "stun:stun.l.google.com:19302"}]},
    }


@pytest.fixture
def data() -> ServerData:
    return ServerData(channel_backlog=16)


@pytest.fixture
def manager(data: ServerData) -> CallManager:
    return CallManager(data)
