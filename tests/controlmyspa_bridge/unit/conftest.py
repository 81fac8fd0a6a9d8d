"""Shared fixtures for unit tests.

This module provides reusable fixtures for testing the spa bridge components.
"""

import secrets
from unittest.mock import AsyncMock

import pytest

from controlmyspa_bridge.config import BridgeConfig
from controlmyspa_bridge.mapping import TopicMapper
from controlmyspa_bridge.scheduler import VirtualScheduler
from controlmyspa_bridge.snapshot import SnapshotStore, parse_snapshot
from controlmyspa_bridge.structs import Snapshot
from tests.helpers.fakes import SPA_ID, FakeBus, FakeSpaAPI, make_raw_owner, make_raw_spa


def make_dummy_secret(prefix: str = "secret") -> str:
    """Return a deterministic-looking but non-literal secret string for tests."""
    return f"{prefix}-{secrets.token_hex(16)}"


JSONDict = dict[str, object]


@pytest.fixture
def raw_spa() -> JSONDict:
    """Spa document as the cloud sends it (Fahrenheit, string ports)."""
    return make_raw_spa()


@pytest.fixture
def snapshot(raw_spa: JSONDict) -> Snapshot:
    """Normalized Celsius snapshot of ``raw_spa``."""
    return parse_snapshot(raw_spa, make_raw_owner(), celsius=True)


@pytest.fixture
def fake_api() -> FakeSpaAPI:
    """Scripted cloud API serving the sample spa document."""
    return FakeSpaAPI()


@pytest.fixture
def fake_bus() -> FakeBus:
    """Connected bus that records publishes and subscriptions."""
    return FakeBus()


@pytest.fixture
def scheduler() -> VirtualScheduler:
    """Scheduler on a virtual clock starting at 0."""
    return VirtualScheduler()


@pytest.fixture
def store(fake_api: FakeSpaAPI) -> SnapshotStore:
    """Snapshot store reading from ``fake_api`` in Celsius."""
    return SnapshotStore(fake_api, celsius=True)


@pytest.fixture
def mapper() -> TopicMapper:
    """Topic mapper for the sample spa with default prefixes."""
    return TopicMapper(SPA_ID)


@pytest.fixture
def bridge_config() -> BridgeConfig:
    """Valid configuration with a dummy ControlMySpa account."""
    return BridgeConfig(
        spa_user="owner@example.com",
        spa_pass=make_dummy_secret("spa"),
        settle_delay=5.0,
        refresh_minutes=10,
    )


@pytest.fixture
def mock_mqtt_client() -> AsyncMock:
    """Mock MQTT client for testing.

    Returns an AsyncMock configured with common MQTT client methods.
    """
    client: AsyncMock = AsyncMock()
    client.publish = AsyncMock(return_value=True)
    client.subscribe = AsyncMock(return_value=True)
    client.is_connected = True
    client._connected = True
    return client
