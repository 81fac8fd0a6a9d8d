"""Bridge Controller.

Connects the engine (credentials, snapshot store, dispatcher) to the message
bus: inbound topics become refreshes or commands, every new snapshot is
republished as retained state, and discovery configs are (re)sent whenever the
bus reconnects or Home Assistant restarts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from controlmyspa_bridge.const import HASS_BIRTH_MSG
from controlmyspa_bridge.credentials import CredentialManager
from controlmyspa_bridge.dispatcher import CommandDispatcher
from controlmyspa_bridge.entities import EntityKey
from controlmyspa_bridge.exceptions import CredentialExpiredError
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.mapping import ControlTopic, TopicMapper
from controlmyspa_bridge.mqtt.discovery import DiscoveryHelper
from controlmyspa_bridge.mqtt.state_updates import StateUpdateHelper
from controlmyspa_bridge.snapshot import SnapshotStore
from controlmyspa_bridge.structs import Outcome, OutcomeStatus, RefreshResult

if TYPE_CHECKING:
    from controlmyspa_bridge.config import BridgeConfig
    from controlmyspa_bridge.scheduler import Scheduler
    from controlmyspa_bridge.structs import BusPublisherProtocol, Credential, Snapshot, SpaAPIProtocol

logger = get_logger(__name__)

PERIODIC_REFRESH_TIMER = "periodic_refresh"
FAILED_STATUSES = (
    OutcomeStatus.INVALID_VALUE,
    OutcomeStatus.TRANSPORT_ERROR,
    OutcomeStatus.RECONCILIATION_MISMATCH,
)


class BridgeController:
    lp: str = "bridge:"

    def __init__(
        self,
        config: BridgeConfig,
        api: SpaAPIProtocol,
        scheduler: Scheduler,
        bus: BusPublisherProtocol,
    ) -> None:
        self.config: BridgeConfig = config
        self.api: SpaAPIProtocol = api
        self.scheduler: Scheduler = scheduler
        self.bus: BusPublisherProtocol = bus
        self.store: SnapshotStore = SnapshotStore(api, celsius=config.celsius)
        self.credentials: CredentialManager = CredentialManager(api, scheduler)
        self.dispatcher: CommandDispatcher = CommandDispatcher(api, self.store, scheduler, config.settle_delay)
        self.state_updates: StateUpdateHelper = StateUpdateHelper(bus)
        self.discovery: DiscoveryHelper = DiscoveryHelper(bus, config.discovery_prefix)
        self.mapper: TopicMapper | None = None
        # discovery sent and command topics subscribed on the current connection
        self._announced: bool = False

        self.store.set_listener(self.on_snapshot_changed)
        self.dispatcher.on_outcome(self.on_outcome)
        self.credentials.on_renewed(self._on_credential_renewed)

    async def start(self) -> None:
        """Log in, load the first snapshot and start the periodic refresh.

        An unreachable cloud is not fatal: the login is retried in the
        background and the first snapshot is loaded once it succeeds.

        Raises:
            CredentialInvalidError: The ControlMySpa account was refused

        """
        lp = f"{self.lp}start:"
        credential = await self.credentials.authenticate()
        if credential is None:
            logger.warning("%s cloud unreachable, spa state loads after the next successful login", lp)
        else:
            result = await self.refresh()
            if result.ok and result.snapshot is not None:
                logger.info(
                    "%s spa initialized",
                    lp,
                    extra={"spa_id": result.snapshot.device_id, "components": len(result.snapshot.components)},
                )
            else:
                logger.warning("%s first refresh failed, retrying on the periodic timer: %s", lp, result.error)
        self.scheduler.call_every(PERIODIC_REFRESH_TIMER, self.config.refresh_interval, self._periodic_refresh)
        logger.debug("%s periodic refresh every %.0fs", lp, self.config.refresh_interval)

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        self.dispatcher.cancel_all()
        self.credentials.stop()
        self.scheduler.cancel_all()
        logger.info("%s timers cancelled", lp)

    async def refresh(self) -> RefreshResult:
        result = await self.store.refresh()
        if isinstance(result.error, CredentialExpiredError):
            logger.info("%s access token refused, renewing now", self.lp)
            await self.credentials.renew_now()
        return result

    async def _periodic_refresh(self) -> None:
        _ = await self.refresh()

    async def _on_credential_renewed(self, _credential: Credential) -> None:
        _ = await self.store.refresh()

    def _ensure_mapper(self, snapshot: Snapshot) -> TopicMapper:
        if self.mapper is None or self.mapper.device_id != snapshot.device_id:
            self.mapper = TopicMapper(
                snapshot.device_id,
                prefix=self.config.topic_prefix,
                consumer_status_topic=self.config.hass_status_topic,
                celsius=self.config.celsius,
            )
            self._announced = False
        return self.mapper

    async def _announce(self, mapper: TopicMapper, snapshot: Snapshot) -> None:
        lp = f"{self.lp}announce:"
        for topic in mapper.subscriptions():
            _ = await self.bus.subscribe(topic)
        sent = await self.discovery.publish_discovery(mapper, snapshot)
        self._announced = self.bus.is_connected
        logger.info("%s subscribed and published discovery", lp, extra={"configs": sent})

    async def on_snapshot_changed(self, snapshot: Snapshot) -> None:
        """Republish retained state for a new snapshot."""
        mapper = self._ensure_mapper(snapshot)
        if not self.bus.is_connected:
            return
        if not self._announced:
            await self._announce(mapper, snapshot)
        _ = await self.state_updates.publish_snapshot(mapper, snapshot)

    async def on_bus_connected(self) -> None:
        """(Re)subscribe and (re)announce after every broker connection."""
        self._announced = False
        if self.config.hass_status_topic:
            _ = await self.bus.subscribe(self.config.hass_status_topic)
        snapshot = self.store.current()
        if snapshot is not None:
            await self.on_snapshot_changed(snapshot)

    async def _on_consumer_status(self, payload: str) -> None:
        lp = f"{self.lp}consumer_status:"
        if payload.casefold() != HASS_BIRTH_MSG.casefold():
            logger.info("%s Home Assistant reported %r", lp, payload)
            return
        logger.info("%s Home Assistant restarted, republishing discovery and state", lp)
        self._announced = False
        snapshot = self.store.current()
        if snapshot is not None:
            await self.on_snapshot_changed(snapshot)

    async def on_inbound_message(self, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}inbound:"
        text = payload.decode(errors="replace").strip()
        if self.mapper is not None:
            route = self.mapper.route_incoming(topic)
        elif topic == self.config.hass_status_topic:
            route = ControlTopic.CONSUMER_STATUS
        else:
            logger.warning("%s spa not loaded yet, dropping message on %s", lp, topic)
            return

        match route:
            case None:
                return
            case ControlTopic.CONSUMER_STATUS:
                await self._on_consumer_status(text)
            case ControlTopic.REFRESH:
                logger.info("%s refresh requested", lp)
                _ = await self.refresh()
            case EntityKey():
                logger.info("%s command %s=%s", lp, route, text)
                outcome = await self.dispatcher.dispatch(route, text)
                if outcome.status is not OutcomeStatus.PENDING:
                    await self.on_outcome(outcome)

    async def on_outcome(self, outcome: Outcome) -> None:
        """Report commands that did not take effect."""
        if isinstance(outcome.error, CredentialExpiredError):
            await self.credentials.renew_now()
        if outcome.status not in FAILED_STATUSES or self.mapper is None:
            return
        _ = await self.state_updates.publish_error(self.mapper, outcome)
