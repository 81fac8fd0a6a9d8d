"""Home Assistant MQTT discovery.

Renders :class:`EntityDescriptor` objects into Home Assistant discovery
configs and publishes them, retained, under
``{discovery_prefix}/{platform}/{object_id}/config``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from controlmyspa_bridge.const import ORIGIN_STRUCT, SPA_MANUFACTURER_FALLBACK
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.mapping import DescriptorRole, EntityDescriptor

if TYPE_CHECKING:
    from controlmyspa_bridge.mapping import TopicMapper
    from controlmyspa_bridge.structs import BusPublisherProtocol, Snapshot

logger = get_logger(__name__)

ONLINE_TEMPLATE = "{% if value_json.online is defined and value_json.online %} Online {% else %} Offline {% endif %}"

PLATFORMS: dict[DescriptorRole, str] = {
    DescriptorRole.DEVICE: "sensor",
    DescriptorRole.TOGGLE: "switch",
    DescriptorRole.INDICATOR: "binary_sensor",
    DescriptorRole.SCHEDULE: "sensor",
    DescriptorRole.TEMPERATURE: "sensor",
    DescriptorRole.MODE: "sensor",
    DescriptorRole.LOCK: "lock",
    DescriptorRole.ACTION: "button",
    DescriptorRole.THERMOSTAT: "climate",
}


def _title(value: str) -> str:
    return value[:1].upper() + value[1:].lower()


def mode_template(values: tuple[str, ...], attribute: str | None = None) -> str:
    """Jinja template showing each known value title-cased, anything else as ``unknown``."""
    field = f"value_json.{attribute}" if attribute else "value_json.value"
    guard = f"{field} is defined and " if attribute else ""
    branches = [
        f'{"if" if i == 0 else "elif"} {guard}{field} == "{value}" %}}{_title(value)}{{% '
        for i, value in enumerate(values)
    ]
    return "{% " + "".join(branches) + "else %}unknown{% endif %}"


def device_registry(snapshot: Snapshot) -> dict[str, object]:
    info = snapshot.device
    identifiers = [i for i in (info.serial_number, snapshot.device_id) if i]
    registry: dict[str, object] = {
        "manufacturer": info.dealer_name or SPA_MANUFACTURER_FALLBACK,
        "model": info.model,
        "identifiers": identifiers,
        "name": "ControlMySpa",
        "suggested_area": "Spa",
    }
    if info.build_number:
        registry["sw_version"] = info.build_number
    return registry


def availability(mapper: TopicMapper) -> dict[str, str]:
    return {
        "topic": mapper.aggregate_topic,
        "value_template": ONLINE_TEMPLATE,
        "payload_available": "Online",
        "payload_not_available": "Offline",
    }


def _role_config(descriptor: EntityDescriptor) -> dict[str, object]:
    d = descriptor
    match d.role:
        case DescriptorRole.DEVICE:
            return {
                "state_topic": d.state_topic,
                "value_template": ONLINE_TEMPLATE,
                "json_attributes_topic": d.state_topic,
            }
        case DescriptorRole.TOGGLE:
            return {
                "state_topic": d.state_topic,
                "state_on": d.on_value,
                "payload_on": d.on_value,
                "value_template": "{{ value_json.value }}",
                "command_topic": d.command_topic,
            }
        case DescriptorRole.INDICATOR:
            return {
                "state_topic": d.state_topic,
                "state_on": d.on_value,
                "payload_on": d.on_value,
                "value_template": (
                    f"{{% if value_json.value == '{d.on_value}' %}}{{{{ value_json.value }}}}{{% else %}}OFF{{% endif %}}"
                ),
            }
        case DescriptorRole.SCHEDULE:
            return {
                "state_topic": d.state_topic,
                "value_template": mode_template(d.values),
                "json_attributes_topic": d.state_topic,
            }
        case DescriptorRole.TEMPERATURE:
            attr = d.attribute
            return {
                "device_class": "temperature",
                "state_class": "measurement",
                "unit_of_measurement": d.unit,
                "state_topic": d.state_topic,
                "value_template": (
                    f"{{% if value_json.{attr} is defined %}}{{{{ value_json.{attr} }}}}{{% else %}}unknown{{% endif %}}"
                ),
            }
        case DescriptorRole.MODE:
            return {
                "state_topic": d.state_topic,
                "value_template": mode_template(d.values, d.attribute),
            }
        case DescriptorRole.LOCK:
            return {
                "state_topic": d.state_topic,
                "command_topic": d.command_topic,
                "payload_lock": "LOCK",
                "payload_unlock": "UNLOCK",
                "state_locked": "LOCK",
                "state_unlocked": "UNLOCK",
                "value_template": f"{{% if value_json.{d.attribute} %}}LOCK{{% else %}}UNLOCK{{%endif%}}",
                "qos": 1,
            }
        case DescriptorRole.ACTION:
            return {
                "command_topic": d.command_topic,
                "payload_press": d.payload,
            }
        case DescriptorRole.THERMOSTAT:
            return {
                "modes": ["off", "heat"],
                "mode_command_topic": d.mode_command_topic,
                "mode_state_topic": d.state_topic,
                "mode_state_template": '{% if value_json.heaterMode == "REST" %}off{% else %}heat{% endif %}',
                "temperature_command_topic": d.command_topic,
                "temperature_state_topic": d.state_topic,
                "temperature_state_template": (
                    "{% if value_json.desiredTemp is defined %}{{ value_json.desiredTemp }}"
                    "{% elif value_json.targetDesiredTemp is defined %}{{ value_json.targetDesiredTemp }}"
                    "{% else %}unknown{% endif %}"
                ),
                "temperature_command_template": "{{value}}",
                "current_temperature_topic": d.state_topic,
                "current_temperature_template": (
                    "{% if value_json.currentTemp is defined %}{{value_json.currentTemp}}{% else %}unknown{% endif %}"
                ),
                "precision": d.step,
                "temp_step": d.step,
                "temperature_unit": d.unit,
                "min_temp": d.min_value,
                "max_temp": d.max_value,
                "action_topic": d.action_topic,
                "action_template": (
                    '{% if value_json.value in ("ON", "HIGH") %}heating{% else %}off{% endif %}'
                ),
            }


class DiscoveryHelper:
    """Helper class for MQTT discovery operations."""

    lp: str = "mqtt:hass:"

    def __init__(self, mqtt_client: BusPublisherProtocol, discovery_prefix: str) -> None:
        """Initialize discovery helper."""
        self.client: BusPublisherProtocol = mqtt_client
        self.discovery_prefix: str = discovery_prefix

    def config_topic(self, descriptor: EntityDescriptor) -> str:
        return f"{self.discovery_prefix}/{PLATFORMS[descriptor.role]}/{descriptor.object_id}/config"

    def render(self, descriptor: EntityDescriptor, mapper: TopicMapper, snapshot: Snapshot) -> dict[str, object]:
        """Home Assistant discovery config for one descriptor."""
        config: dict[str, object] = {
            "unique_id": descriptor.unique_id,
            "object_id": descriptor.object_id,
            "name": descriptor.name,
            "icon": descriptor.icon,
        }
        config.update(_role_config(descriptor))
        config["availability"] = availability(mapper)
        config["origin"] = ORIGIN_STRUCT
        config["device"] = device_registry(snapshot)
        return {k: v for k, v in config.items() if v is not None}

    async def publish_discovery(self, mapper: TopicMapper, snapshot: Snapshot) -> int:
        """Publish every descriptor for ``snapshot``. Returns configs sent."""
        lp = f"{self.lp}discovery:"
        if not self.client.is_connected:
            logger.debug("%s bus not connected, skipping", lp)
            return 0
        logger.info("%s Starting MQTT discovery", lp, extra={"spa_id": snapshot.device_id})
        sent = 0
        for descriptor in mapper.descriptors(snapshot):
            config = self.render(descriptor, mapper, snapshot)
            topic = self.config_topic(descriptor)
            logger.debug("%s %s", lp, topic)
            sent += await self.client.publish(topic, json.dumps(config), retain=True)
        logger.info("%s Ending MQTT discovery, %d config(s) published", lp, sent)
        return sent
