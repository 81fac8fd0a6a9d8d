"""Entity/Topic Mapping Layer.

Topic names are a pure function of ``(prefix, deviceId, kind, port)``:

* commands: ``{prefix}/{deviceId}/{segment}[/{port}]/set``
* component state: ``{prefix}/{deviceId}/{segment}[/{port}]``
* aggregate spa state (also carries every device-level setting): ``{prefix}/{deviceId}/spa``
* manual refresh: ``{prefix}/{deviceId}/refresh``

Device-level settings are also accepted on their old topics without ``/set``
(``{prefix}/{deviceId}/heaterMode`` and friends), which existing dashboards
still publish to.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from controlmyspa_bridge.const import DEFAULT_HASS_STATUS_TOPIC, DEFAULT_TOPIC_PREFIX
from controlmyspa_bridge.entities import (
    ENTITY_SPECS,
    ComponentType,
    DeviceSetting,
    EntityKey,
    HeaterMode,
    TempRange,
    kind_for_segment,
)
from controlmyspa_bridge.exceptions import BusRoutingError
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.structs import Snapshot

logger = get_logger(__name__)

SET_SUFFIX = "set"
REFRESH_SEGMENT = "refresh"
AGGREGATE_SEGMENT = "spa"
ERROR_SEGMENT = "error"
# topics the first dashboards used, before every command moved under /set
LEGACY_SEGMENTS: frozenset[str] = frozenset(
    ENTITY_SPECS[kind].segment for kind in DeviceSetting
)
FILTER_STATES = ("ON", "OFF", "DISABLED")


class ControlTopic(StrEnum):
    REFRESH = "refresh"
    CONSUMER_STATUS = "consumer_status"


class DescriptorRole(StrEnum):
    """How a consumer should present an entity."""

    DEVICE = "device"
    TOGGLE = "toggle"
    INDICATOR = "indicator"
    SCHEDULE = "schedule"
    TEMPERATURE = "temperature"
    MODE = "mode"
    LOCK = "lock"
    ACTION = "action"
    THERMOSTAT = "thermostat"


@dataclass(frozen=True, slots=True)
class EntityDescriptor:
    """Consumer-agnostic description of one published entity.

    Attributes:
        object_id: Stable id derived from the device id, kind and port
        unique_id: ``object_id`` plus a role suffix
        role: Presentation hint
        name: Human name
        icon: Icon hint
        key: Entity the descriptor controls or mirrors, None for derived readings
        state_topic: Topic carrying the value
        command_topic: Topic accepting commands
        attribute: Field of the aggregate state holding the value
        on_value: Value meaning "on" for toggles and indicators
        values: Values the entity reports
        unit: Temperature unit for readings and thermostats
        payload: Payload an action sends
        min_value: Lower setpoint bound (thermostat)
        max_value: Upper setpoint bound (thermostat)
        step: Setpoint step (thermostat)
        mode_command_topic: Topic for mode changes (thermostat)
        action_topic: Topic reporting heater activity (thermostat)

    """

    object_id: str
    unique_id: str
    role: DescriptorRole
    name: str
    icon: str
    key: EntityKey | None = None
    state_topic: str | None = None
    command_topic: str | None = None
    attribute: str | None = None
    on_value: str | None = None
    values: tuple[str, ...] = ()
    unit: str | None = None
    payload: str | None = None
    min_value: float | None = None
    max_value: float | None = None
    step: float | None = None
    mode_command_topic: str | None = None
    action_topic: str | None = None


def snake_case(attribute: str) -> str:
    """``targetDesiredTemp`` -> ``target_desired_temp``"""
    return re.sub(r"[A-Z]", lambda m: f"_{m.group(0).lower()}", attribute)


class TopicMapper:
    """Topic names and descriptors for one spa."""

    lp: str = "mapping:"

    def __init__(
        self,
        device_id: str,
        prefix: str = DEFAULT_TOPIC_PREFIX,
        consumer_status_topic: str = DEFAULT_HASS_STATUS_TOPIC,
        celsius: bool = True,
    ) -> None:
        if not device_id or "/" in device_id:
            msg = f"invalid device id for topics: {device_id!r}"
            raise ValueError(msg)
        self.device_id: str = device_id
        self.prefix: str = prefix.rstrip("/")
        self.consumer_status_topic: str = consumer_status_topic
        self.celsius: bool = celsius
        self.base: str = f"{self.prefix}/{device_id}"

    # -- topics -----------------------------------------------------------

    def _entity_path(self, key: EntityKey) -> str:
        if key.port is None:
            return f"{self.base}/{key.spec.segment}"
        return f"{self.base}/{key.spec.segment}/{key.port}"

    def topic_for(self, key: EntityKey) -> str:
        """Command topic of ``key``."""
        return f"{self._entity_path(key)}/{SET_SUFFIX}"

    def state_topic_for(self, key: EntityKey) -> str:
        if key.is_component:
            return self._entity_path(key)
        return self.aggregate_topic

    @property
    def aggregate_topic(self) -> str:
        return f"{self.base}/{AGGREGATE_SEGMENT}"

    @property
    def refresh_topic(self) -> str:
        return f"{self.base}/{REFRESH_SEGMENT}"

    @property
    def error_topic(self) -> str:
        return f"{self.base}/{ERROR_SEGMENT}"

    def subscriptions(self) -> list[str]:
        """Topics (with wildcards) the bridge listens on."""
        topics = [
            self.refresh_topic,
            f"{self.base}/+/{SET_SUFFIX}",
            f"{self.base}/+/+/{SET_SUFFIX}",
        ]
        topics.extend(f"{self.base}/{segment}" for segment in sorted(LEGACY_SEGMENTS))
        if self.consumer_status_topic:
            topics.append(self.consumer_status_topic)
        return topics

    def _parse(self, topic: str) -> EntityKey | ControlTopic:
        if self.consumer_status_topic and topic == self.consumer_status_topic:
            return ControlTopic.CONSUMER_STATUS
        if not topic.startswith(f"{self.base}/"):
            raise BusRoutingError(topic)
        parts = topic[len(self.base) + 1 :].split("/")
        if parts == [REFRESH_SEGMENT]:
            return ControlTopic.REFRESH

        if parts[-1] == SET_SUFFIX:
            parts = parts[:-1]
        elif len(parts) != 1 or parts[0] not in LEGACY_SEGMENTS:
            raise BusRoutingError(topic)

        kind = kind_for_segment(parts[0]) if parts else None
        if kind is None or len(parts) > 2:
            raise BusRoutingError(topic)
        port: int | None = None
        if len(parts) == 2:
            if not parts[1].isdigit():
                raise BusRoutingError(topic)
            port = int(parts[1])
        try:
            return EntityKey(kind, port)
        except ValueError:
            raise BusRoutingError(topic) from None

    def route_incoming(self, topic: str) -> EntityKey | ControlTopic | None:
        """Resolve an inbound topic; unknown topics are logged and give None."""
        try:
            return self._parse(topic)
        except BusRoutingError as e:
            logger.warning("%s %s", self.lp, e)
            return None

    # -- descriptors ------------------------------------------------------

    def object_id(self, key: EntityKey | None = None, suffix: str | None = None) -> str:
        object_id = f"controlmyspa_{self.device_id}"
        if key is not None:
            object_id += f"_{key.spec.segment}"
            if key.port is not None:
                object_id += f"_{key.port}"
        if suffix:
            object_id += f"_{suffix}"
        return object_id

    @property
    def unit(self) -> str:
        return "C" if self.celsius else "F"

    def _reading(self, name: str, attribute: str, key: EntityKey | None = None) -> EntityDescriptor:
        object_id = self.object_id(suffix=snake_case(attribute))
        return EntityDescriptor(
            object_id=object_id,
            unique_id=f"{object_id}_sensor",
            role=DescriptorRole.TEMPERATURE,
            name=name,
            icon="mdi:thermometer",
            key=key,
            state_topic=self.aggregate_topic,
            command_topic=self.topic_for(key) if key is not None else None,
            attribute=attribute,
            unit=self.unit,
        )

    def _mode(self, key: EntityKey, values: tuple[str, ...]) -> EntityDescriptor:
        spec = key.spec
        object_id = self.object_id(suffix=snake_case(spec.snapshot_field or spec.segment))
        return EntityDescriptor(
            object_id=object_id,
            unique_id=f"{object_id}_sensor",
            role=DescriptorRole.MODE,
            name=spec.name,
            icon=spec.icon,
            key=key,
            state_topic=self.aggregate_topic,
            command_topic=self.topic_for(key),
            attribute=spec.snapshot_field,
            values=values,
        )

    def descriptor_for(self, key: EntityKey) -> EntityDescriptor:
        """Primary descriptor of ``key``, built from its kind and port only."""
        spec = key.spec
        match key.kind:
            case DeviceSetting.DESIRED_TEMP:
                return self._reading(spec.name, spec.snapshot_field or "desiredTemp", key)
            case DeviceSetting.HEATER_MODE:
                return self._mode(key, (HeaterMode.REST, HeaterMode.READY))
            case DeviceSetting.TEMP_RANGE:
                return self._mode(key, (TempRange.HIGH, TempRange.LOW))
            case DeviceSetting.PANEL_LOCK:
                object_id = self.object_id(suffix="panel_lock")
                return EntityDescriptor(
                    object_id=object_id,
                    unique_id=f"{object_id}_lock",
                    role=DescriptorRole.LOCK,
                    name=spec.name,
                    icon=spec.icon,
                    key=key,
                    state_topic=self.aggregate_topic,
                    command_topic=self.topic_for(key),
                    attribute=spec.snapshot_field,
                    values=spec.allowed,
                )
            case ComponentType.FILTER:
                object_id = self.object_id(key)
                return EntityDescriptor(
                    object_id=object_id,
                    unique_id=f"{object_id}_sensor",
                    role=DescriptorRole.SCHEDULE,
                    name=key.display_name,
                    icon=spec.icon,
                    key=key,
                    state_topic=self.state_topic_for(key),
                    command_topic=self.topic_for(key),
                    values=FILTER_STATES,
                )
            case _:
                pass

        object_id = self.object_id(key)
        if spec.writable:
            return EntityDescriptor(
                object_id=object_id,
                unique_id=f"{object_id}_switch",
                role=DescriptorRole.TOGGLE,
                name=key.display_name,
                icon=spec.icon,
                key=key,
                state_topic=self.state_topic_for(key),
                command_topic=self.topic_for(key),
                on_value=spec.on_value,
                values=spec.allowed,
            )
        return self._indicator(key)

    def _indicator(self, key: EntityKey) -> EntityDescriptor:
        object_id = self.object_id(key)
        return EntityDescriptor(
            object_id=object_id,
            unique_id=f"{object_id}_binary_sensor",
            role=DescriptorRole.INDICATOR,
            name=key.display_name,
            icon=key.spec.icon,
            key=key,
            state_topic=self.state_topic_for(key),
            on_value=key.spec.on_value,
        )

    def device_descriptor(self) -> EntityDescriptor:
        object_id = self.object_id(suffix=AGGREGATE_SEGMENT)
        return EntityDescriptor(
            object_id=object_id,
            unique_id=f"{object_id}_sensor",
            role=DescriptorRole.DEVICE,
            name="Spa",
            icon="mdi:hot-tub",
            state_topic=self.aggregate_topic,
            attribute="online",
        )

    def thermostat_descriptor(self, snapshot: Snapshot) -> EntityDescriptor:
        object_id = self.object_id()
        return EntityDescriptor(
            object_id=object_id,
            unique_id=f"{object_id}_climate",
            role=DescriptorRole.THERMOSTAT,
            name="ControlMySpa",
            icon="mdi:hot-tub",
            key=EntityKey(DeviceSetting.DESIRED_TEMP),
            state_topic=self.aggregate_topic,
            command_topic=self.topic_for(EntityKey(DeviceSetting.DESIRED_TEMP)),
            unit=self.unit,
            min_value=snapshot.min_temp,
            max_value=snapshot.max_temp,
            step=0.5 if self.celsius else 1.0,
            mode_command_topic=self.topic_for(EntityKey(DeviceSetting.HEATER_MODE)),
            action_topic=self.state_topic_for(EntityKey(ComponentType.HEATER, 0)),
        )

    def _actions(self) -> list[EntityDescriptor]:
        heater_mode = EntityKey(DeviceSetting.HEATER_MODE)
        toggle_id = self.object_id(suffix=snake_case(heater_mode.spec.segment))
        refresh_id = self.object_id(suffix=REFRESH_SEGMENT)
        return [
            EntityDescriptor(
                object_id=toggle_id,
                unique_id=f"{toggle_id}_sensor",
                role=DescriptorRole.ACTION,
                name="Toggle Heater Mode",
                icon="mdi:radiator",
                key=heater_mode,
                command_topic=self.topic_for(heater_mode),
                payload="TOGGLE",
            ),
            EntityDescriptor(
                object_id=refresh_id,
                unique_id=f"{refresh_id}_sensor",
                role=DescriptorRole.ACTION,
                name="Refresh",
                icon="mdi:sync",
                command_topic=self.refresh_topic,
                payload="REFRESH",
            ),
        ]

    def descriptors(self, snapshot: Snapshot) -> list[EntityDescriptor]:
        """Every descriptor for ``snapshot``: aggregate device, readings, actions, then entities."""
        result = [
            self.device_descriptor(),
            self._reading("Current Temperature", "currentTemp"),
            self._reading("Target Temperature", "targetDesiredTemp"),
        ]
        result.extend(self.descriptor_for(EntityKey(setting)) for setting in DeviceSetting)
        result.extend(self._actions())
        result.append(self.thermostat_descriptor(snapshot))
        for comp in snapshot.components:
            key = comp.key
            primary = self.descriptor_for(key)
            result.append(primary)
            if primary.role is DescriptorRole.TOGGLE:
                result.append(self._indicator(key))
        return result
