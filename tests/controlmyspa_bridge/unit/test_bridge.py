"""Unit tests for the bridge controller, driven end to end with fakes."""

from __future__ import annotations

import pytest
import pytest_asyncio

from controlmyspa_bridge.bridge import PERIODIC_REFRESH_TIMER, BridgeController
from controlmyspa_bridge.config import BridgeConfig
from controlmyspa_bridge.credentials import RENEWAL_TIMER
from controlmyspa_bridge.exceptions import CredentialExpiredError, CredentialInvalidError, SpaTransportError
from controlmyspa_bridge.scheduler import VirtualScheduler
from controlmyspa_bridge.structs import CommandAck
from tests.helpers.fakes import SPA_ID, FakeBus, FakeSpaAPI

BASE = f"controlmyspa/{SPA_ID}"
ERROR_TOPIC = f"{BASE}/error"


def _config_topics(bus: FakeBus) -> list[str]:
    return [t for t in bus.topics() if t.startswith("homeassistant/") and t.endswith("/config")]


@pytest.fixture
def bridge(
    bridge_config: BridgeConfig,
    fake_api: FakeSpaAPI,
    scheduler: VirtualScheduler,
    fake_bus: FakeBus,
) -> BridgeController:
    """Bridge wired to the fake cloud, the fake bus and virtual time."""
    return BridgeController(bridge_config, fake_api, scheduler, fake_bus)


@pytest_asyncio.fixture
async def started(bridge: BridgeController, fake_bus: FakeBus) -> BridgeController:
    """Bridge after a successful start, with the bus log cleared."""
    await bridge.start()
    fake_bus.clear()
    return bridge


class TestStartup:
    """Tests for BridgeController.start."""

    @pytest.mark.asyncio
    async def test_start_announces_and_publishes(
        self,
        bridge: BridgeController,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        await bridge.start()

        snapshot = bridge.store.current()
        assert snapshot is not None
        assert bridge.mapper is not None
        assert set(bridge.mapper.subscriptions()) <= set(fake_bus.subscriptions)
        assert len(_config_topics(fake_bus)) == len(bridge.mapper.descriptors(snapshot))
        assert fake_bus.last_json(f"{BASE}/spa")["heaterMode"] == "REST"
        assert fake_bus.last_json(f"{BASE}/pump/0")["value"] == "HIGH"
        assert PERIODIC_REFRESH_TIMER in scheduler.pending()
        assert RENEWAL_TIMER in scheduler.pending()

    @pytest.mark.asyncio
    async def test_refused_login_propagates(self, bridge: BridgeController, fake_api: FakeSpaAPI):
        fake_api.auth_error = CredentialInvalidError("bad password", status=401)

        with pytest.raises(CredentialInvalidError):
            await bridge.start()
        assert fake_api.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_unreachable_cloud_at_startup_is_retried(
        self,
        bridge: BridgeController,
        fake_api: FakeSpaAPI,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        """The bridge keeps running and loads the spa after the next successful login."""
        fake_api.auth_error = SpaTransportError("cloud down")

        await bridge.start()

        assert fake_api.fetch_calls == 0
        assert PERIODIC_REFRESH_TIMER in scheduler.pending()
        fake_api.auth_error = None
        await scheduler.advance(60)

        assert bridge.credentials.credential is not None
        assert bridge.store.current() is not None
        assert _config_topics(fake_bus)

    @pytest.mark.asyncio
    async def test_first_refresh_failure_is_not_fatal(
        self,
        bridge: BridgeController,
        fake_api: FakeSpaAPI,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        """Without a first snapshot the periodic refresh keeps trying."""
        fake_api.fetch_error = TimeoutError()

        await bridge.start()

        assert bridge.store.current() is None
        assert fake_bus.published == []
        fake_api.fetch_error = None
        await scheduler.advance(600)
        assert bridge.store.current() is not None
        assert _config_topics(fake_bus)

    @pytest.mark.asyncio
    async def test_periodic_refresh(
        self,
        started: BridgeController,
        fake_api: FakeSpaAPI,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        fetches = fake_api.fetch_calls
        fake_api.set_state(heaterMode="READY")

        await scheduler.advance(600)

        assert fake_api.fetch_calls == fetches + 1
        assert fake_bus.last_json(f"{BASE}/spa")["heaterMode"] == "READY"
        assert _config_topics(fake_bus) == []

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, started: BridgeController, scheduler: VirtualScheduler):
        await started.stop()

        assert scheduler.pending() == []


class TestInboundCommands:
    """Tests for commands arriving on the bus."""

    @pytest.mark.asyncio
    async def test_heater_mode_confirmed_inline(
        self,
        started: BridgeController,
        fake_api: FakeSpaAPI,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        """REST -> READY echoed by the cloud is published right away."""
        fake_api.ack = CommandAck(status=200, accepted=True, values={"HEATERMODE": "READY"})

        await started.on_inbound_message(f"{BASE}/heaterMode/set", b"READY")

        assert [c.value for c in fake_api.commands] == ["READY"]
        assert fake_bus.last_json(f"{BASE}/spa")["heaterMode"] == "READY"
        assert not any(t.startswith("confirm:") for t in scheduler.pending())
        assert fake_bus.payloads(ERROR_TOPIC) == []

    @pytest.mark.asyncio
    async def test_legacy_topic(self, started: BridgeController, fake_api: FakeSpaAPI):
        """Old dashboards publish to the setting's topic without /set."""
        await started.on_inbound_message(f"{BASE}/tempRange", b"low")

        assert [(str(c.key), c.value) for c in fake_api.commands] == [("tempRange", "LOW")]

    @pytest.mark.asyncio
    async def test_deferred_command_confirmed_by_refresh(
        self,
        started: BridgeController,
        fake_api: FakeSpaAPI,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        await started.on_inbound_message(f"{BASE}/light/0/set", b"ON")
        fake_api.set_component("LIGHT", 0, value="HIGH")

        await scheduler.advance(5)

        assert fake_bus.last_json(f"{BASE}/light/0")["value"] == "HIGH"
        assert fake_bus.payloads(ERROR_TOPIC) == []
        assert started.dispatcher.pending == {}

    @pytest.mark.asyncio
    async def test_mismatch_is_reported(
        self,
        started: BridgeController,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        await started.on_inbound_message(f"{BASE}/blower/0/set", b"HIGH")

        await scheduler.advance(10)

        report = fake_bus.last_json(ERROR_TOPIC)
        assert report["entity"] == "blower/0"
        assert report["status"] == "reconciliation_mismatch"
        assert report["observed"] == "OFF"

    @pytest.mark.asyncio
    async def test_invalid_value_is_reported_without_calling_cloud(
        self,
        started: BridgeController,
        fake_api: FakeSpaAPI,
        fake_bus: FakeBus,
    ):
        await started.on_inbound_message(f"{BASE}/temp/set", b"120")

        assert fake_api.commands == []
        report = fake_bus.last_json(ERROR_TOPIC)
        assert report["status"] == "invalid_value"
        assert report["entity"] == "temp"

    @pytest.mark.asyncio
    async def test_unknown_topic_is_ignored(self, started: BridgeController, fake_api: FakeSpaAPI, fake_bus: FakeBus):
        await started.on_inbound_message(f"{BASE}/jacuzzi/set", b"ON")

        assert fake_api.commands == []
        assert fake_bus.published == []

    @pytest.mark.asyncio
    async def test_expired_token_on_command_renews(self, started: BridgeController, fake_api: FakeSpaAPI):
        fake_api.command_error = CredentialExpiredError()
        auth_calls = fake_api.auth_calls

        await started.on_inbound_message(f"{BASE}/light/0/set", b"HIGH")

        assert fake_api.auth_calls == auth_calls + 1

    @pytest.mark.asyncio
    async def test_message_before_first_snapshot_is_dropped(self, bridge: BridgeController, fake_api: FakeSpaAPI):
        await bridge.on_inbound_message(f"{BASE}/light/0/set", b"HIGH")

        assert fake_api.commands == []


class TestControlTopics:
    """Tests for refresh requests and Home Assistant status."""

    @pytest.mark.asyncio
    async def test_refresh_topic(self, started: BridgeController, fake_api: FakeSpaAPI, fake_bus: FakeBus):
        fetches = fake_api.fetch_calls

        await started.on_inbound_message(f"{BASE}/refresh", b"REFRESH")

        assert fake_api.fetch_calls == fetches + 1
        assert fake_bus.payloads(f"{BASE}/spa")

    @pytest.mark.asyncio
    async def test_expired_token_on_refresh_renews_once(
        self,
        started: BridgeController,
        fake_api: FakeSpaAPI,
    ):
        """A 401 renews the token and refreshes again, without looping."""
        auth_calls = fake_api.auth_calls
        fetches = fake_api.fetch_calls
        fake_api.fetch_error = CredentialExpiredError()

        await started.on_inbound_message(f"{BASE}/refresh", b"")

        assert fake_api.auth_calls == auth_calls + 1
        assert fake_api.fetch_calls == fetches + 2

    @pytest.mark.asyncio
    async def test_home_assistant_birth_republishes(self, started: BridgeController, fake_bus: FakeBus):
        snapshot = started.store.current()
        assert snapshot is not None
        assert started.mapper is not None

        await started.on_inbound_message("homeassistant/status", b"online")

        assert len(_config_topics(fake_bus)) == len(started.mapper.descriptors(snapshot))
        assert fake_bus.payloads(f"{BASE}/spa")

    @pytest.mark.asyncio
    async def test_home_assistant_offline_is_only_logged(self, started: BridgeController, fake_bus: FakeBus):
        await started.on_inbound_message("homeassistant/status", b"offline")

        assert fake_bus.published == []

    @pytest.mark.asyncio
    async def test_birth_before_first_snapshot(self, bridge: BridgeController, fake_bus: FakeBus):
        await bridge.on_inbound_message("homeassistant/status", b"online")

        assert fake_bus.published == []


class TestBusReconnect:
    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_and_republishes(self, started: BridgeController, fake_bus: FakeBus):
        assert started.mapper is not None

        await started.on_bus_connected()

        assert "homeassistant/status" in fake_bus.subscriptions
        assert set(started.mapper.subscriptions()) <= set(fake_bus.subscriptions)
        assert _config_topics(fake_bus)
        assert fake_bus.payloads(f"{BASE}/spa")

    @pytest.mark.asyncio
    async def test_nothing_published_while_disconnected(
        self,
        started: BridgeController,
        fake_bus: FakeBus,
        scheduler: VirtualScheduler,
    ):
        fake_bus.connected = False
        await scheduler.advance(600)
        assert fake_bus.published == []

        fake_bus.connected = True
        await started.on_bus_connected()
        assert _config_topics(fake_bus)
