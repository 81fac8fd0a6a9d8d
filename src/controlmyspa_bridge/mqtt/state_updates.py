"""MQTT state publishing.

Publishes the aggregate spa state and one message per component, all
retained, plus error reports for commands that did not take effect.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from controlmyspa_bridge.logging_abstraction import get_logger

if TYPE_CHECKING:
    from controlmyspa_bridge.mapping import TopicMapper
    from controlmyspa_bridge.structs import BusPublisherProtocol, Component, Outcome, Snapshot

logger = get_logger(__name__)

_READINGS = (
    ("currentTemp", "current_temp"),
    ("desiredTemp", "desired_temp"),
    ("targetDesiredTemp", "target_desired_temp"),
    ("minTemp", "min_temp"),
    ("maxTemp", "max_temp"),
)


def aggregate_state(snapshot: Snapshot) -> dict[str, object]:
    """Aggregate spa message: scalar fields plus device and owner metadata.

    Absent readings are left out rather than sent as null.
    """
    state: dict[str, object] = {"spaId": snapshot.device_id}
    for name, attr in _READINGS:
        value = getattr(snapshot, attr)
        if value is not None:
            state[name] = value
    state.update(
        {
            "tempRange": snapshot.temp_range,
            "heaterMode": snapshot.heater_mode,
            "online": snapshot.online,
            "panelLocked": snapshot.panel_locked,
            "celsius": snapshot.celsius,
            "device": snapshot.device.model_dump(by_alias=True),
            "owner": snapshot.owner.model_dump(by_alias=True),
        },
    )
    return state


def component_state(component: Component) -> dict[str, object]:
    return component.model_dump(by_alias=True, mode="json")


def error_report(outcome: Outcome) -> dict[str, object]:
    return {
        "entity": str(outcome.key),
        "status": outcome.status.value,
        "desired": outcome.desired,
        "observed": outcome.observed,
        "error": str(outcome.error) if outcome.error is not None else None,
    }


class StateUpdateHelper:
    """Helper class for publishing spa state to MQTT."""

    lp: str = "mqtt:state:"

    def __init__(self, mqtt_client: BusPublisherProtocol) -> None:
        """Initialize the state update helper.

        Args:
            mqtt_client: Bus to publish on

        """
        self.client: BusPublisherProtocol = mqtt_client

    async def publish_snapshot(self, mapper: TopicMapper, snapshot: Snapshot) -> int:
        """Publish the aggregate state and every component. Returns messages sent."""
        lp = f"{self.lp}publish_snapshot:"
        if not self.client.is_connected:
            logger.debug("%s bus not connected, skipping", lp)
            return 0
        sent = 0
        state = aggregate_state(snapshot)
        logger.debug("%s Publishing spa state", lp, extra={"topic": mapper.aggregate_topic})
        sent += await self.client.publish(mapper.aggregate_topic, json.dumps(state), retain=True)
        for comp in snapshot.components:
            topic = mapper.state_topic_for(comp.key)
            sent += await self.client.publish(topic, json.dumps(component_state(comp)), retain=True)
        logger.debug("%s %d message(s) published", lp, sent)
        return sent

    async def publish_error(self, mapper: TopicMapper, outcome: Outcome) -> bool:
        lp = f"{self.lp}publish_error:"
        report = error_report(outcome)
        logger.info("%s %s", lp, report["error"], extra={"entity": report["entity"], "status": report["status"]})
        return await self.client.publish(mapper.error_topic, json.dumps(report), retain=False)
