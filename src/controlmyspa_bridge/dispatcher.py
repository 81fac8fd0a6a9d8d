"""Command Dispatcher & Reconciler.

Turns a desired entity value into a cloud control call and then makes sure
the spa's reported state agrees with it:

* the value is validated first; invalid values never reach the network
* a rejected call is reported as a transport error and changes nothing
* if the cloud echoes the new value, the snapshot is patched right away
* otherwise the snapshot is refreshed once the cloud has had time to settle,
  with exactly one more refresh if the value has still not shown up

Overlapping commands for the same entity are not coalesced; each one keeps
its own confirmation timer and the last refresh wins.
"""

from __future__ import annotations

import itertools
import math
import re
from functools import partial
from typing import TYPE_CHECKING

import aiohttp

from controlmyspa_bridge.const import DEFAULT_SETTLE_DELAY
from controlmyspa_bridge.entities import DeviceSetting, EntityKey, HeaterMode, ValueFormat
from controlmyspa_bridge.exceptions import (
    CommandRejectedError,
    InvalidValueError,
    ReconciliationMismatchError,
    SpaBridgeError,
    SpaTransportError,
)
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.structs import (
    CommandAck,
    ConfirmationPolicy,
    Outcome,
    OutcomeStatus,
    PendingCommand,
    Snapshot,
    SpaCommand,
)
from controlmyspa_bridge.utils import c2f, f2c, parse_reading, round_tenth

if TYPE_CHECKING:
    from controlmyspa_bridge.scheduler import Scheduler
    from controlmyspa_bridge.snapshot import SnapshotStore
    from controlmyspa_bridge.structs import OutcomeListener, SpaAPIProtocol

logger = get_logger(__name__)

# refreshes made after an accepted write: the settle refresh plus one fallback
MAX_CONFIRM_REFRESHES = 2
FILTER_STEP_MINUTES = 15
FILTER_MAX_MINUTES = 24 * 60

_SCHEDULE_RE = re.compile(r"^(\d{1,2}):(\d{2}),(\d{1,4})$")
_LOCKED_ECHOES = ("LOCK", "LOCK_PANEL", "LOCKED", "TRUE")


def _validate_enum(key: EntityKey, raw: object) -> str:
    spec = key.spec
    value = str(raw).strip().upper()
    value = spec.aliases.get(value, value)
    if value not in spec.allowed:
        raise InvalidValueError(str(key), raw, ", ".join(spec.allowed))
    return value


def _validate_temperature(key: EntityKey, raw: object, snapshot: Snapshot | None) -> float:
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise InvalidValueError(str(key), raw, "a number") from None
    if math.isnan(value) or math.isinf(value):
        raise InvalidValueError(str(key), raw, "a number")
    value = round_tenth(value)
    if snapshot is not None and snapshot.min_temp is not None and snapshot.max_temp is not None:
        if not snapshot.min_temp <= value <= snapshot.max_temp:
            raise InvalidValueError(str(key), raw, f"{snapshot.min_temp} to {snapshot.max_temp}")
    return value


def _validate_schedule(key: EntityKey, raw: object) -> str:
    allowed = "HH:MM,<minutes> with minutes a multiple of 15"
    match = _SCHEDULE_RE.match(str(raw).strip())
    if match is None:
        raise InvalidValueError(str(key), raw, allowed)
    hour, minute, minutes = (int(g) for g in match.groups())
    if hour > 23 or minute > 59 or minutes % FILTER_STEP_MINUTES or minutes > FILTER_MAX_MINUTES:
        raise InvalidValueError(str(key), raw, allowed)
    # the first filter cycle cannot be disabled
    if minutes == 0 and key.port == 0:
        raise InvalidValueError(str(key), raw, "a duration above 0 for the first filter cycle")
    return f"{hour:02d}:{minute:02d},{minutes}"


def validate(key: EntityKey, raw: object, snapshot: Snapshot | None = None) -> str | float:
    """Normalize a command payload for ``key`` or raise :class:`InvalidValueError`."""
    match key.spec.value_format:
        case ValueFormat.ENUM:
            return _validate_enum(key, raw)
        case ValueFormat.TEMPERATURE:
            return _validate_temperature(key, raw, snapshot)
        case ValueFormat.FILTER_SCHEDULE:
            return _validate_schedule(key, raw)
        case ValueFormat.READ_ONLY:
            raise InvalidValueError(str(key), raw, "nothing, the entity is read-only")


def values_match(key: EntityKey, desired: str | float, observed: str | float | None) -> bool:
    if observed is None:
        return False
    if key.kind == DeviceSetting.DESIRED_TEMP:
        try:
            return round_tenth(float(desired)) == round_tenth(float(observed))
        except ValueError:
            return False
    return str(desired).upper() == str(observed).upper()


class CommandDispatcher:
    lp: str = "dispatcher:"

    def __init__(
        self,
        api: SpaAPIProtocol,
        store: SnapshotStore,
        scheduler: Scheduler,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self.api: SpaAPIProtocol = api
        self.store: SnapshotStore = store
        self.scheduler: Scheduler = scheduler
        self.settle_delay: float = settle_delay
        self.pending: dict[int, PendingCommand] = {}
        self._seq = itertools.count(1)
        self._on_outcome: OutcomeListener | None = None

    def on_outcome(self, listener: OutcomeListener) -> None:
        """Receive the terminal outcome of every command that went pending."""
        self._on_outcome = listener

    def _wire_value(self, key: EntityKey, desired: str | float, snapshot: Snapshot) -> str:
        if key.kind == DeviceSetting.DESIRED_TEMP:
            fahrenheit = c2f(float(desired)) if snapshot.celsius else round_tenth(float(desired))
            return f"{fahrenheit:.1f}"
        return str(desired)

    def _inline_value(self, key: EntityKey, ack: CommandAck, snapshot: Snapshot) -> str | float | None:
        field_name = key.spec.inline_field
        if field_name is None:
            return None
        if key.port is not None:
            field_name = f"{field_name}_{key.port}"
        raw = ack.values.get(field_name)
        if raw is None:
            return None
        match key.kind:
            case DeviceSetting.DESIRED_TEMP:
                reading = parse_reading(raw)
                if reading is None:
                    return None
                return f2c(reading) if snapshot.celsius else reading
            case DeviceSetting.PANEL_LOCK:
                return "LOCK" if raw.strip().upper() in _LOCKED_ECHOES else "UNLOCK"
            case _:
                return raw.strip().upper()

    async def dispatch(self, key: EntityKey, raw_value: object) -> Outcome:
        """Validate, send and start confirming one write.

        Returns:
            Outcome: INVALID_VALUE or TRANSPORT_ERROR when nothing changed,
            CONFIRMED when the new value is already visible, or PENDING with
            the :class:`PendingCommand` that will resolve later

        """
        lp = f"{self.lp}dispatch:"
        snapshot = self.store.current()
        try:
            desired = validate(key, raw_value, snapshot)
        except InvalidValueError as e:
            logger.warning("%s %s", lp, e)
            return Outcome(OutcomeStatus.INVALID_VALUE, key, None, error=e)

        if snapshot is None:
            error = SpaTransportError("spa state not loaded yet")
            logger.warning("%s cannot send %s=%s: %s", lp, key, desired, error)
            return Outcome(OutcomeStatus.TRANSPORT_ERROR, key, desired, error=error)

        if key.is_component and snapshot.component(key) is None:
            error = InvalidValueError(str(key), raw_value, "a component this spa reports")
            logger.warning("%s %s", lp, error)
            return Outcome(OutcomeStatus.INVALID_VALUE, key, desired, error=error)

        if key.kind == DeviceSetting.HEATER_MODE:
            current = snapshot.heater_mode
            if desired == "TOGGLE":
                desired = HeaterMode.REST if current == HeaterMode.READY else HeaterMode.READY
            if current == desired:
                logger.info("%s heater already in %s, nothing to toggle", lp, current)
                return Outcome(OutcomeStatus.CONFIRMED, key, desired, observed=current)

        command = SpaCommand(spa_id=snapshot.device_id, key=key, value=self._wire_value(key, desired, snapshot))
        try:
            ack = await self.api.send_command(command)
        except SpaBridgeError as e:
            logger.warning("%s %s=%s not sent: %s", lp, key, desired, e)
            return Outcome(OutcomeStatus.TRANSPORT_ERROR, key, desired, error=e)
        except (aiohttp.ClientError, TimeoutError) as e:
            error = SpaTransportError(str(e) or type(e).__name__)
            logger.warning("%s %s=%s not sent: %s", lp, key, desired, error)
            return Outcome(OutcomeStatus.TRANSPORT_ERROR, key, desired, error=error)

        if not ack.accepted:
            error = CommandRejectedError(str(key), ack.status)
            logger.warning("%s %s", lp, error)
            return Outcome(OutcomeStatus.TRANSPORT_ERROR, key, desired, error=error)

        inline = self._inline_value(key, ack, snapshot)
        pending = PendingCommand(
            key=key,
            desired=desired,
            dispatched_at=self.scheduler.time(),
            policy=ConfirmationPolicy.INLINE if inline is not None else ConfirmationPolicy.DEFERRED,
            seq=next(self._seq),
        )
        if inline is not None:
            patched = await self.store.apply_patch(key, inline)
            observed = patched.value_of(key) if patched is not None else None
            if values_match(key, desired, observed):
                logger.info("%s %s=%s confirmed by the cloud's answer", lp, key, desired)
                return Outcome(OutcomeStatus.CONFIRMED, key, desired, observed=observed)
            # the echo disagrees, go straight to the fallback refresh
            pending.attempt = MAX_CONFIRM_REFRESHES - 1

        self.pending[pending.seq] = pending
        self.scheduler.call_later(pending.timer_name, self.settle_delay, partial(self._reconcile, pending))
        logger.info(
            "%s %s=%s accepted, confirming in %.1fs",
            lp,
            key,
            desired,
            self.settle_delay,
            extra={"seq": pending.seq, "policy": pending.policy},
        )
        return Outcome(OutcomeStatus.PENDING, key, desired, observed=inline, pending=pending)

    async def _reconcile(self, pending: PendingCommand) -> None:
        lp = f"{self.lp}reconcile:"
        pending.attempt += 1
        result = await self.store.refresh()
        if result.error is not None or result.snapshot is None:
            error = result.error or SpaTransportError("no snapshot")
            outcome = Outcome(OutcomeStatus.TRANSPORT_ERROR, pending.key, pending.desired, error=error)
            await self._finish(pending, outcome)
            return

        observed = result.snapshot.value_of(pending.key)
        if values_match(pending.key, pending.desired, observed):
            await self._finish(pending, Outcome(OutcomeStatus.CONFIRMED, pending.key, pending.desired, observed))
            return

        if pending.attempt < MAX_CONFIRM_REFRESHES:
            logger.debug(
                "%s %s still %r (wanted %r), one more refresh in %.1fs",
                lp,
                pending.key,
                observed,
                pending.desired,
                self.settle_delay,
            )
            self.scheduler.call_later(pending.timer_name, self.settle_delay, partial(self._reconcile, pending))
            return

        error = ReconciliationMismatchError(str(pending.key), pending.desired, observed)
        logger.warning("%s %s", lp, error, extra={"seq": pending.seq})
        await self._finish(
            pending,
            Outcome(OutcomeStatus.RECONCILIATION_MISMATCH, pending.key, pending.desired, observed, error=error),
        )

    async def _finish(self, pending: PendingCommand, outcome: Outcome) -> None:
        _ = self.pending.pop(pending.seq, None)
        _ = self.scheduler.cancel(pending.timer_name)
        if not pending.future.done():
            pending.future.set_result(outcome)
        logger.debug("%s %s finished: %s", self.lp, pending.key, outcome.status)
        if self._on_outcome is not None:
            await self._on_outcome(outcome)

    def cancel_all(self) -> None:
        """Drop every pending confirmation (shutdown)."""
        for pending in list(self.pending.values()):
            _ = self.scheduler.cancel(pending.timer_name)
            if not pending.future.done():
                _ = pending.future.cancel()
        self.pending.clear()


__all__ = [
    "CommandDispatcher",
    "validate",
    "values_match",
]
