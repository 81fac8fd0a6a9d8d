from __future__ import annotations

import asyncio
import datetime
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ConfigDict, Field, computed_field

from controlmyspa_bridge.entities import ComponentType, DeviceSetting, EntityKey, TempRange
from controlmyspa_bridge.utils import f2c, round_half_step

if TYPE_CHECKING:
    from controlmyspa_bridge.exceptions import SpaBridgeError


class Credential(BaseModel):
    """Access token issued by the ControlMySpa identity service.

    Token response structure:
        {
            'access_token': '...',
            'refresh_token': '...',
            'token_type': 'bearer',
            'expires_in': 3599,
            'scope': 'openid user_name'
        }
    """

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int
    issued_at: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now(datetime.UTC))

    @computed_field
    @property
    def expires_at(self) -> datetime.datetime:
        return self.issued_at + datetime.timedelta(seconds=self.expires_in)


class Component(BaseModel):
    """One entry of the spa's component list."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    component_type: ComponentType = Field(alias="componentType")
    port: int
    value: str
    name: str | None = None
    available_values: tuple[str, ...] = Field(default=(), alias="availableValues")
    # filter cycles only
    hour: int | None = None
    minute: int | None = None
    duration_minutes: int | None = Field(default=None, alias="durationMinutes")

    @property
    def key(self) -> EntityKey:
        return EntityKey.for_component(self.component_type, self.port)

    @property
    def schedule(self) -> str | None:
        """Filter cycle as ``HH:MM,<minutes>``, the same shape commands use."""
        if self.hour is None or self.minute is None or self.duration_minutes is None:
            return None
        return f"{self.hour:02d}:{self.minute:02d},{self.duration_minutes}"


class DeviceInfo(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    serial_number: str | None = Field(default=None, alias="serialNumber")
    product_name: str = Field(default="N/A", alias="productName")
    model: str = "N/A"
    dealer_name: str | None = Field(default=None, alias="dealerName")
    build_number: str | None = Field(default=None, alias="buildNumber")


class OwnerInfo(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    phone: str | None = None
    email: str | None = None
    address: str | None = None

    @computed_field(alias="fullName")
    @property
    def full_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else None


class RangeLimits(BaseModel):
    """Setpoint limits per temperature range, in Fahrenheit as reported."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    high_range_low: float | None = Field(default=None, alias="highRangeLow")
    high_range_high: float | None = Field(default=None, alias="highRangeHigh")
    low_range_low: float | None = Field(default=None, alias="lowRangeLow")
    low_range_high: float | None = Field(default=None, alias="lowRangeHigh")


class Snapshot(BaseModel):
    """Normalized, immutable view of the spa at one point in time.

    Temperatures are already in the configured unit; absent readings are None.
    A new snapshot replaces the old one as a whole.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    celsius: bool = True
    online: bool = False
    current_temp: float | None = None
    desired_temp: float | None = None
    target_desired_temp: float | None = None
    heater_mode: str | None = None
    temp_range: str | None = None
    panel_locked: bool = False
    range_limits: RangeLimits = RangeLimits()
    components: tuple[Component, ...] = ()
    device: DeviceInfo = DeviceInfo()
    owner: OwnerInfo = OwnerInfo()
    fetched_at: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now(datetime.UTC))

    def _range_bound(self, high_end: bool) -> float | None:
        limits = self.range_limits
        if self.temp_range == TempRange.HIGH:
            raw = limits.high_range_high if high_end else limits.high_range_low
        else:
            raw = limits.low_range_high if high_end else limits.low_range_low
        if raw is None:
            return None
        return round_half_step(f2c(raw) if self.celsius else raw)

    @computed_field
    @property
    def min_temp(self) -> float | None:
        return self._range_bound(high_end=False)

    @computed_field
    @property
    def max_temp(self) -> float | None:
        return self._range_bound(high_end=True)

    @property
    def setpoint(self) -> float | None:
        """Desired temperature, falling back to the target while the spa reports none."""
        return self.desired_temp if self.desired_temp is not None else self.target_desired_temp

    def component(self, key: EntityKey) -> Component | None:
        for comp in self.components:
            if comp.key == key:
                return comp
        return None

    def value_of(self, key: EntityKey) -> str | float | None:
        """Current value of an entity in the same form commands use."""
        match key.kind:
            case DeviceSetting.DESIRED_TEMP:
                return self.setpoint
            case DeviceSetting.HEATER_MODE:
                return self.heater_mode
            case DeviceSetting.TEMP_RANGE:
                return self.temp_range
            case DeviceSetting.PANEL_LOCK:
                return "LOCK" if self.panel_locked else "UNLOCK"
            case ComponentType.FILTER:
                comp = self.component(key)
                return comp.schedule if comp else None
            case _:
                comp = self.component(key)
                return comp.value if comp else None

    def with_value(self, key: EntityKey, value: str | float) -> Snapshot:
        """Copy of this snapshot with one entity's value replaced."""
        match key.kind:
            case DeviceSetting.DESIRED_TEMP:
                return self.model_copy(update={"desired_temp": float(value)})
            case DeviceSetting.HEATER_MODE:
                return self.model_copy(update={"heater_mode": str(value)})
            case DeviceSetting.TEMP_RANGE:
                return self.model_copy(update={"temp_range": str(value)})
            case DeviceSetting.PANEL_LOCK:
                return self.model_copy(update={"panel_locked": str(value) == "LOCK"})
            case _:
                pass

        update: dict[str, object] = {"value": str(value)}
        if key.kind == ComponentType.FILTER:
            start, _, minutes = str(value).partition(",")
            hour, _, minute = start.partition(":")
            update = {"hour": int(hour), "minute": int(minute), "duration_minutes": int(minutes)}
        components = tuple(c.model_copy(update=update) if c.key == key else c for c in self.components)
        return self.model_copy(update={"components": components})


class OutcomeStatus(StrEnum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    INVALID_VALUE = "invalid_value"
    TRANSPORT_ERROR = "transport_error"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"


class ConfirmationPolicy(StrEnum):
    INLINE = "inline"
    DEFERRED = "deferred"


@dataclass(slots=True)
class Outcome:
    """Result of one dispatched command."""

    status: OutcomeStatus
    key: EntityKey
    desired: str | float | None
    observed: str | float | None = None
    error: SpaBridgeError | None = None
    pending: PendingCommand | None = None

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.CONFIRMED, OutcomeStatus.PENDING)


@dataclass(slots=True)
class PendingCommand:
    """A write the cloud accepted but that is not yet visible in a snapshot."""

    key: EntityKey
    desired: str | float
    dispatched_at: float
    policy: ConfirmationPolicy
    seq: int
    attempt: int = 0
    future: asyncio.Future[Outcome] = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    @property
    def timer_name(self) -> str:
        return f"confirm:{self.key}:{self.seq}"

    async def wait(self) -> Outcome:
        """Wait for the command to reach a terminal outcome."""
        return await asyncio.shield(self.future)


@dataclass(frozen=True, slots=True)
class SpaCommand:
    """A validated write, in the cloud's units, ready to send."""

    spa_id: str
    key: EntityKey
    value: str


class CommandAck(BaseModel):
    """The cloud's answer to a control call.

    ``values`` carries any fields the cloud echoed back with their new values
    (for example ``DESIREDTEMP`` after ``setDesiredTemp``).
    """

    status: int
    accepted: bool
    values: dict[str, str] = Field(default_factory=dict)


@dataclass(slots=True)
class RefreshResult:
    snapshot: Snapshot | None = None
    error: SpaBridgeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.snapshot is not None


type SnapshotListener = Callable[[Snapshot], Awaitable[None]]
type OutcomeListener = Callable[[Outcome], Awaitable[None]]
type RenewedListener = Callable[[Credential], Awaitable[None]]


class SpaAPIProtocol(Protocol):
    """What the bridge needs from the cloud."""

    async def authenticate(self) -> Credential: ...

    async def fetch_state(self) -> tuple[dict[str, object], dict[str, object]]:
        """Return the raw spa document and the raw owner document."""
        ...

    async def send_command(self, command: SpaCommand) -> CommandAck: ...

    async def close(self) -> None: ...


class BusPublisherProtocol(Protocol):
    """What the bridge needs from the message bus."""

    @property
    def is_connected(self) -> bool: ...

    async def publish(self, topic: str, payload: bytes | str, retain: bool = False) -> bool: ...

    async def subscribe(self, topic: str) -> bool: ...
