"""Unit tests for MQTT state publishing."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from controlmyspa_bridge.entities import ComponentType, EntityKey
from controlmyspa_bridge.exceptions import ReconciliationMismatchError
from controlmyspa_bridge.mapping import TopicMapper
from controlmyspa_bridge.mqtt.state_updates import StateUpdateHelper, aggregate_state, component_state, error_report
from controlmyspa_bridge.snapshot import parse_snapshot
from controlmyspa_bridge.structs import Outcome, OutcomeStatus, Snapshot
from tests.helpers.fakes import SPA_ID, FakeBus, make_raw_owner, make_raw_spa

BASE = f"controlmyspa/{SPA_ID}"


class TestPayloads:
    """Tests for the shape of published payloads."""

    def test_aggregate_state(self, snapshot: Snapshot):
        state = aggregate_state(snapshot)

        assert state["spaId"] == SPA_ID
        assert state["currentTemp"] == 38.0
        assert state["desiredTemp"] == 38.9
        assert state["targetDesiredTemp"] == 37.8
        assert state["minTemp"] == 26.5
        assert state["maxTemp"] == 40.0
        assert state["heaterMode"] == "REST"
        assert state["tempRange"] == "HIGH"
        assert state["online"] is True
        assert state["panelLocked"] is False
        assert state["celsius"] is True
        assert state["device"]["serialNumber"] == "SN-0042"  # type: ignore[index]
        assert state["owner"]["fullName"] == "Sam Rivera"  # type: ignore[index]
        _ = json.dumps(state)

    def test_absent_readings_are_left_out(self):
        snap = parse_snapshot(make_raw_spa(currentTemp="NaN"), make_raw_owner(), celsius=True)

        assert "currentTemp" not in aggregate_state(snap)

    def test_component_state(self, snapshot: Snapshot):
        pump = snapshot.component(EntityKey(ComponentType.PUMP, 0))
        assert pump is not None

        state = component_state(pump)

        assert state["componentType"] == "PUMP"
        assert state["port"] == 0
        assert state["value"] == "HIGH"
        assert state["availableValues"] == ["OFF", "HIGH"]

    def test_error_report(self):
        key = EntityKey(ComponentType.LIGHT, 0)
        error = ReconciliationMismatchError(str(key), "HIGH", "OFF")
        outcome = Outcome(OutcomeStatus.RECONCILIATION_MISMATCH, key, "HIGH", "OFF", error=error)

        assert error_report(outcome) == {
            "entity": "light/0",
            "status": "reconciliation_mismatch",
            "desired": "HIGH",
            "observed": "OFF",
            "error": "light/0 still reports 'OFF' after setting 'HIGH'",
        }


class TestStateUpdateHelper:
    """Tests for StateUpdateHelper publishing."""

    @pytest.mark.asyncio
    async def test_publish_snapshot(self, fake_bus: FakeBus, mapper: TopicMapper, snapshot: Snapshot):
        """Aggregate plus one retained message per component."""
        helper = StateUpdateHelper(fake_bus)

        sent = await helper.publish_snapshot(mapper, snapshot)

        assert sent == 1 + len(snapshot.components)
        assert all(retain for _, _, retain in fake_bus.published)
        assert fake_bus.last_json(f"{BASE}/spa")["heaterMode"] == "REST"
        assert fake_bus.last_json(f"{BASE}/heater/1")["value"] == "OFF"
        assert fake_bus.last_json(f"{BASE}/filter/0")["durationMinutes"] == 120
        assert fake_bus.last_json(f"{BASE}/ozone")["value"] == "ON"

    @pytest.mark.asyncio
    async def test_publish_snapshot_disconnected(self, fake_bus: FakeBus, mapper: TopicMapper, snapshot: Snapshot):
        fake_bus.connected = False
        helper = StateUpdateHelper(fake_bus)

        assert await helper.publish_snapshot(mapper, snapshot) == 0

    @pytest.mark.asyncio
    async def test_publish_error_is_not_retained(self, mock_mqtt_client: AsyncMock, mapper: TopicMapper):
        helper = StateUpdateHelper(mock_mqtt_client)
        key = EntityKey(ComponentType.LIGHT, 0)
        outcome = Outcome(OutcomeStatus.TRANSPORT_ERROR, key, "HIGH")

        assert await helper.publish_error(mapper, outcome) is True

        mock_mqtt_client.publish.assert_awaited_once()
        args, kwargs = mock_mqtt_client.publish.call_args
        assert args[0] == f"{BASE}/error"
        assert json.loads(args[1])["status"] == "transport_error"
        assert kwargs["retain"] is False
