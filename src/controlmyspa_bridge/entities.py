"""Entity kinds exposed by the bridge.

Every controllable or observable thing on the spa is addressed by an
:class:`EntityKey`: a kind plus, for port-indexed component types, the port.
What each kind looks like on the bus, which values it accepts, and how it is
presented is declared once in :data:`ENTITY_SPECS`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import override


class ComponentType(StrEnum):
    """Component types reported in the spa's component list."""

    LIGHT = "LIGHT"
    PUMP = "PUMP"
    BLOWER = "BLOWER"
    HEATER = "HEATER"
    FILTER = "FILTER"
    CIRCULATION_PUMP = "CIRCULATION_PUMP"
    OZONE = "OZONE"


class DeviceSetting(StrEnum):
    """Spa-wide settings that are written through their own control calls."""

    DESIRED_TEMP = "DESIRED_TEMP"
    HEATER_MODE = "HEATER_MODE"
    TEMP_RANGE = "TEMP_RANGE"
    PANEL_LOCK = "PANEL_LOCK"


type EntityKind = ComponentType | DeviceSetting


class HeaterMode(StrEnum):
    REST = "REST"
    READY = "READY"


class TempRange(StrEnum):
    HIGH = "HIGH"
    LOW = "LOW"


class ValueFormat(StrEnum):
    """How command payloads for a kind are validated."""

    ENUM = "enum"
    TEMPERATURE = "temperature"
    FILTER_SCHEDULE = "filter_schedule"
    READ_ONLY = "read_only"


@dataclass(frozen=True, slots=True)
class EntitySpec:
    """Static description of one entity kind.

    Attributes:
        segment: Topic segment used for the kind
        name: Human name, port number is appended for port-indexed kinds
        icon: Material design icon for dashboards
        port_indexed: Whether several instances exist, told apart by port
        value_format: How command payloads are validated
        allowed: Accepted command values for ENUM kinds
        aliases: Alternate spellings accepted on input, mapped to allowed values
        on_value: Value that means "on" for binary presentation
        inline_field: Key under which the cloud echoes a written value
        snapshot_field: Aggregate state field holding a device setting

    """

    segment: str
    name: str
    icon: str
    port_indexed: bool = False
    value_format: ValueFormat = ValueFormat.READ_ONLY
    allowed: tuple[str, ...] = ()
    aliases: dict[str, str] = field(default_factory=dict)
    on_value: str | None = None
    inline_field: str | None = None
    snapshot_field: str | None = None

    @property
    def writable(self) -> bool:
        return self.value_format is not ValueFormat.READ_ONLY


_ON_OFF = ("HIGH", "OFF")

ENTITY_SPECS: dict[EntityKind, EntitySpec] = {
    ComponentType.LIGHT: EntitySpec(
        segment="light",
        name="Light",
        icon="mdi:lightbulb",
        port_indexed=True,
        value_format=ValueFormat.ENUM,
        allowed=_ON_OFF,
        aliases={"ON": "HIGH"},
        on_value="HIGH",
        inline_field="LIGHT",
    ),
    ComponentType.PUMP: EntitySpec(
        segment="pump",
        name="Pump",
        icon="mdi:fan",
        port_indexed=True,
        value_format=ValueFormat.ENUM,
        allowed=_ON_OFF,
        aliases={"ON": "HIGH"},
        on_value="HIGH",
        inline_field="PUMP",
    ),
    ComponentType.BLOWER: EntitySpec(
        segment="blower",
        name="Blower",
        icon="mdi:weather-windy",
        port_indexed=True,
        value_format=ValueFormat.ENUM,
        allowed=_ON_OFF,
        aliases={"ON": "HIGH"},
        on_value="HIGH",
        inline_field="BLOWER",
    ),
    ComponentType.HEATER: EntitySpec(
        segment="heater",
        name="Heater",
        icon="mdi:radiator",
        port_indexed=True,
        on_value="ON",
    ),
    ComponentType.FILTER: EntitySpec(
        segment="filter",
        name="Filter",
        icon="mdi:air-filter",
        port_indexed=True,
        value_format=ValueFormat.FILTER_SCHEDULE,
    ),
    ComponentType.CIRCULATION_PUMP: EntitySpec(
        segment="circulation_pump",
        name="Circulation pump",
        icon="mdi:sync",
        on_value="HIGH",
    ),
    ComponentType.OZONE: EntitySpec(
        segment="ozone",
        name="Ozone",
        icon="mdi:air-filter",
        on_value="ON",
    ),
    DeviceSetting.DESIRED_TEMP: EntitySpec(
        segment="temp",
        name="Desired Temperature",
        icon="mdi:thermometer",
        value_format=ValueFormat.TEMPERATURE,
        inline_field="DESIREDTEMP",
        snapshot_field="desiredTemp",
    ),
    DeviceSetting.HEATER_MODE: EntitySpec(
        segment="heaterMode",
        name="Heater Mode",
        icon="mdi:radiator",
        value_format=ValueFormat.ENUM,
        allowed=(HeaterMode.REST, HeaterMode.READY, "TOGGLE"),
        # climate entities send their hvac mode names
        aliases={"OFF": HeaterMode.REST, "HEAT": HeaterMode.READY},
        inline_field="HEATERMODE",
        snapshot_field="heaterMode",
    ),
    DeviceSetting.TEMP_RANGE: EntitySpec(
        segment="tempRange",
        name="Temperature Range",
        icon="mdi:thermometer-lines",
        value_format=ValueFormat.ENUM,
        allowed=(TempRange.HIGH, TempRange.LOW),
        inline_field="TEMPRANGE",
        snapshot_field="tempRange",
    ),
    DeviceSetting.PANEL_LOCK: EntitySpec(
        segment="panelLock",
        name="Panel",
        icon="mdi:lock",
        value_format=ValueFormat.ENUM,
        allowed=("LOCK", "UNLOCK"),
        inline_field="PANELLOCK",
        snapshot_field="panelLocked",
    ),
}

_BY_SEGMENT: dict[str, EntityKind] = {spec.segment: kind for kind, spec in ENTITY_SPECS.items()}


def kind_for_segment(segment: str) -> EntityKind | None:
    return _BY_SEGMENT.get(segment)


@dataclass(frozen=True, slots=True)
class EntityKey:
    """Stable identity of one entity: kind plus port for port-indexed kinds."""

    kind: EntityKind
    port: int | None = None

    def __post_init__(self) -> None:
        indexed = ENTITY_SPECS[self.kind].port_indexed
        if indexed and (self.port is None or self.port < 0):
            msg = f"{self.kind} requires a non-negative port"
            raise ValueError(msg)
        if not indexed and self.port is not None:
            msg = f"{self.kind} is not port-indexed"
            raise ValueError(msg)

    @classmethod
    def for_component(cls, component_type: ComponentType, port: int) -> EntityKey:
        """Key for a reported component, dropping the port where the kind has none."""
        return cls(component_type, port if ENTITY_SPECS[component_type].port_indexed else None)

    @property
    def spec(self) -> EntitySpec:
        return ENTITY_SPECS[self.kind]

    @property
    def is_component(self) -> bool:
        return isinstance(self.kind, ComponentType)

    @property
    def display_name(self) -> str:
        if self.port is None:
            return self.spec.name
        return f"{self.spec.name} {self.port + 1}"

    @override
    def __str__(self) -> str:
        if self.port is None:
            return self.spec.segment
        return f"{self.spec.segment}/{self.port}"
