"""Device Snapshot Store.

Holds the latest normalized view of the spa. A refresh fetches the raw spa
document, normalizes it into a :class:`Snapshot` and swaps it in as a whole;
a failed refresh leaves the previous snapshot in place.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING, cast

import aiohttp
from pydantic import ValidationError

from controlmyspa_bridge.const import HEATER_PORTS
from controlmyspa_bridge.entities import ComponentType, EntityKey
from controlmyspa_bridge.exceptions import SpaBridgeError, SpaTransportError
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.structs import (
    Component,
    DeviceInfo,
    OwnerInfo,
    RangeLimits,
    RefreshResult,
    Snapshot,
    SnapshotListener,
)
from controlmyspa_bridge.utils import f2c, parse_port, parse_reading

if TYPE_CHECKING:
    from controlmyspa_bridge.structs import SpaAPIProtocol

logger = get_logger(__name__)

_READINGS = ("currentTemp", "desiredTemp", "targetDesiredTemp")


def _mapping(raw: object) -> Mapping[str, object]:
    if isinstance(raw, Mapping):
        return cast("Mapping[str, object]", raw)
    return {}


def _text(raw: object) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _parse_components(raw_components: object, lp: str) -> list[Component]:
    components: list[Component] = []
    seen: set[tuple[ComponentType, int]] = set()
    if not isinstance(raw_components, list):
        return components

    for raw in cast("list[object]", raw_components):
        entry = _mapping(raw)
        try:
            component_type = ComponentType(str(entry.get("componentType")))
        except ValueError:
            logger.debug("%s skipping unsupported component type: %s", lp, entry.get("componentType"))
            continue
        port = parse_port(entry.get("port"))
        if port is None:
            logger.warning("%s %s component without a usable port: %r", lp, component_type, entry.get("port"))
            continue
        if (component_type, port) in seen:
            logger.warning("%s duplicate %s component on port %s, keeping the first", lp, component_type, port)
            continue
        try:
            comp = Component.model_validate(
                {
                    "componentType": component_type,
                    "port": port,
                    "value": str(entry.get("value") or "OFF"),
                    "name": _text(entry.get("name")),
                    "availableValues": tuple(str(v) for v in cast("list[object]", entry.get("availableValues") or [])),
                    "hour": entry.get("hour"),
                    "minute": entry.get("minute"),
                    "durationMinutes": entry.get("durationMinutes"),
                },
            )
        except ValidationError as e:
            logger.warning("%s dropping malformed %s component on port %s: %s", lp, component_type, port, e)
            continue
        seen.add((component_type, port))
        components.append(comp)

    for port in HEATER_PORTS:
        if (ComponentType.HEATER, port) not in seen:
            components.append(Component(component_type=ComponentType.HEATER, port=port, value="OFF", name="HEATER"))
    return components


def parse_snapshot(raw_spa: Mapping[str, object], raw_owner: Mapping[str, object], celsius: bool) -> Snapshot:
    """Normalize the cloud's spa document into a :class:`Snapshot`.

    Args:
        raw_spa: Spa document as returned by ``findByUsername``
        raw_owner: The account's ``whoami`` document
        celsius: Convert temperatures from Fahrenheit to Celsius

    Returns:
        A new immutable Snapshot

    Raises:
        SpaTransportError: The document has no spa id

    """
    lp = "snapshot:parse:"
    spa_id = _text(raw_spa.get("_id"))
    if spa_id is None:
        raise SpaTransportError("spa document has no _id")
    state = _mapping(raw_spa.get("currentState")) or raw_spa

    readings: dict[str, float | None] = {}
    for name in _READINGS:
        value = parse_reading(state.get(name))
        if value is not None and celsius:
            value = f2c(value)
        readings[name] = value

    limits = _mapping(state.get("rangeLimits"))
    dealer = _mapping(raw_spa.get("dealer"))
    system_info = _mapping(raw_spa.get("systemInfo"))
    address = _mapping(raw_owner.get("address"))

    return Snapshot(
        device_id=spa_id,
        celsius=celsius,
        online=bool(state.get("isOnline", raw_spa.get("isOnline", False))),
        current_temp=readings["currentTemp"],
        desired_temp=readings["desiredTemp"],
        target_desired_temp=readings["targetDesiredTemp"],
        heater_mode=_text(state.get("heaterMode")),
        temp_range=_text(state.get("tempRange")),
        panel_locked=bool(state.get("isPanelLocked", state.get("panelLock", False))),
        range_limits=RangeLimits(
            highRangeLow=parse_reading(limits.get("highRangeLow")),
            highRangeHigh=parse_reading(limits.get("highRangeHigh")),
            lowRangeLow=parse_reading(limits.get("lowRangeLow")),
            lowRangeHigh=parse_reading(limits.get("lowRangeHigh")),
        ),
        components=tuple(_parse_components(state.get("components"), lp)),
        device=DeviceInfo(
            serialNumber=_text(raw_spa.get("serialNumber")),
            dealerName=_text(dealer.get("name")),
            buildNumber=_text(system_info.get("buildNumber")),
        ),
        owner=OwnerInfo(
            firstName=_text(raw_owner.get("firstName")),
            lastName=_text(raw_owner.get("lastName")),
            phone=_text(raw_owner.get("phone")),
            email=_text(raw_owner.get("email")),
            address=_text(address.get("address1")),
        ),
    )


class SnapshotStore:
    """Last-known-good spa state with a single change listener."""

    lp: str = "snapshot:"

    def __init__(self, api: SpaAPIProtocol, celsius: bool = True) -> None:
        self.api: SpaAPIProtocol = api
        self.celsius: bool = celsius
        self._snapshot: Snapshot | None = None
        self._listener: SnapshotListener | None = None
        self._inflight: asyncio.Task[RefreshResult] | None = None
        self.last_error: SpaBridgeError | None = None

    def current(self) -> Snapshot | None:
        return self._snapshot

    def set_listener(self, listener: SnapshotListener) -> None:
        """Install the one consumer of "changed" notifications."""
        if self._listener is not None and self._listener is not listener:
            msg = "SnapshotStore already has a change listener"
            raise RuntimeError(msg)
        self._listener = listener

    async def _notify(self, snapshot: Snapshot) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(snapshot)
        except Exception:
            logger.exception("%s change listener failed", self.lp)

    async def replace(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        await self._notify(snapshot)

    async def apply_patch(self, key: EntityKey, value: str | float) -> Snapshot | None:
        """Optimistically set one entity's value in a new snapshot."""
        if self._snapshot is None:
            return None
        patched = self._snapshot.with_value(key, value)
        logger.debug("%s patched %s -> %s", self.lp, key, value)
        await self.replace(patched)
        return patched

    async def refresh(self) -> RefreshResult:
        """Fetch and install a new snapshot.

        Concurrent callers share one fetch. Failures are returned, never raised,
        and leave the current snapshot untouched.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._fetch(), name="snapshot_refresh")
        return await asyncio.shield(self._inflight)

    async def _fetch(self) -> RefreshResult:
        lp = f"{self.lp}refresh:"
        try:
            raw_spa, raw_owner = await self.api.fetch_state()
            snapshot = parse_snapshot(raw_spa, raw_owner, self.celsius)
        except SpaBridgeError as e:
            return self._failed(lp, e)
        except (aiohttp.ClientError, TimeoutError) as e:
            return self._failed(lp, SpaTransportError(str(e) or type(e).__name__))
        except (ValidationError, ValueError, TypeError) as e:
            return self._failed(lp, SpaTransportError(f"malformed spa document: {e}"))

        self.last_error = None
        logger.debug(
            "%s new snapshot",
            lp,
            extra={"spa_id": snapshot.device_id, "components": len(snapshot.components)},
        )
        await self.replace(snapshot)
        return RefreshResult(snapshot=snapshot)

    def _failed(self, lp: str, error: SpaBridgeError) -> RefreshResult:
        self.last_error = error
        logger.warning("%s keeping previous snapshot: %s", lp, error)
        return RefreshResult(snapshot=self._snapshot, error=error)
