"""MQTT client core for the spa bridge.

Provides the MQTTClient class with the broker connection lifecycle; inbound
messages are handed to :class:`CommandRouter`, which passes them on to the
bridge.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Protocol

import aiomqtt

from controlmyspa_bridge.const import HASS_BIRTH_MSG, HASS_WILL_MSG, SPA_BRIDGE_LWT_MSG
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.mqtt.command_routing import CommandRouter
from controlmyspa_bridge.utils import send_sigterm

if TYPE_CHECKING:
    from controlmyspa_bridge.config import BridgeConfig

logger = get_logger(__name__)

# broker refused the login: MQTT v5 reason codes 134/135, v3 return codes 4/5
FATAL_CONNECT_CODES = ("code:134", "code:135", "code:4]", "code:5]")


class BusEventHandler(Protocol):
    async def on_bus_connected(self) -> None: ...

    async def on_inbound_message(self, topic: str, payload: bytes) -> None: ...


class MQTTClient:
    """Broker connection with automatic reconnect."""

    lp: str = "mqtt:"

    def __init__(self, config: BridgeConfig, handler: BusEventHandler | None = None) -> None:
        self.config: BridgeConfig = config
        self.handler: BusEventHandler | None = handler
        self._connected: bool = False
        self.client: aiomqtt.Client | None = None
        self.start_task: asyncio.Task[None] | None = None
        self.topic: str = config.topic_prefix
        self.status_topic: str = f"{config.topic_prefix}/bridge/status"
        self.broker_client_id: str = f"controlmyspa_bridge_{uuid.uuid4().hex[:8]}"
        self.command_router: CommandRouter = CommandRouter(self)

    @property
    def is_connected(self) -> bool:
        """Check if MQTT client is connected to the broker."""
        return self._connected

    def set_connected(self, connected: bool) -> None:
        self._connected = connected

    def set_handler(self, handler: BusEventHandler) -> None:
        self.handler = handler

    def _build_client(self) -> aiomqtt.Client:
        lwt = aiomqtt.Will(topic=self.status_topic, payload=SPA_BRIDGE_LWT_MSG, retain=True)
        return aiomqtt.Client(
            hostname=self.config.mqtt_host,
            port=self.config.mqtt_port,
            username=self.config.mqtt_user,
            password=self.config.mqtt_pass,
            identifier=self.broker_client_id,
            will=lwt,
        )

    async def start(self) -> None:
        itr = 0
        lp = f"{self.lp}start:"
        try:
            while True:
                itr += 1
                self._connected = await self.connect()
                if self._connected:
                    if self.handler is not None:
                        try:
                            await self.handler.on_bus_connected()
                        except Exception:
                            logger.exception("%s connect handling failed", lp)
                    try:
                        await self.command_router.start_receiver_task()
                    except (aiomqtt.MqttError, aiomqtt.MqttCodeError) as e:
                        logger.warning("%s connection lost: %s", lp, e, extra={"attempt": itr})
                        self._connected = False
                        continue
                else:
                    delay = self.config.mqtt_conn_delay
                    logger.info(
                        "%s connecting to MQTT broker failed, sleeping for %s seconds before re-trying...",
                        lp,
                        delay,
                    )
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s MQTT start() EXCEPTION", lp)

    async def connect(self) -> bool:
        lp = f"{self.lp}connect:"
        self._connected = False
        logger.debug("%s Connecting to MQTT broker...", lp)
        self.client = self._build_client()
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as mqtt_err_exc:
            logger.warning("%s Connection failed [MqttError]: %s", lp, mqtt_err_exc)
            if any(code in str(mqtt_err_exc) for code in FATAL_CONNECT_CODES):
                logger.critical(
                    "%s Bad username or password, check your MQTT credentials (username: %s)",
                    lp,
                    self.config.mqtt_user,
                )
                send_sigterm()
            return False

        self._connected = True
        logger.info(
            "%s Connected to MQTT broker: %s port: %s",
            lp,
            self.config.mqtt_host,
            self.config.mqtt_port,
        )
        _ = await self.send_birth_msg()
        return True

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self._connected:
            _ = await self.send_will_msg()
        try:
            if self.client is not None:
                logger.debug("%s Disconnecting from broker...", lp)
                await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as ce:
            logger.warning("%s MQTT disconnect failed: %s", lp, ce)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)
        finally:
            self._connected = False
            await self.command_router.stop()
            if self.start_task and not self.start_task.done():
                logger.debug("%s FINISHING: Cancelling start task", lp)
                _ = self.start_task.cancel()

    async def _publish_status(self, payload: str, lp: str) -> bool:
        if not self._connected or self.client is None:
            return False
        logger.debug("%s Sending %s to %s", lp, payload, self.status_topic)
        try:
            await self.client.publish(self.status_topic, payload.encode(), qos=0, retain=True)
        except aiomqtt.MqttError as mqtt_exc:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_exc)
            self._connected = False
            return False
        return True

    async def send_birth_msg(self) -> bool:
        return await self._publish_status(HASS_BIRTH_MSG, f"{self.lp}send_birth_msg:")

    async def send_will_msg(self) -> bool:
        return await self._publish_status(HASS_WILL_MSG, f"{self.lp}send_will_msg:")

    async def publish(self, topic: str, payload: bytes | str, retain: bool = False) -> bool:
        """Publish a message to the MQTT broker."""
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            return False
        data = payload.encode() if isinstance(payload, str) else payload
        try:
            _ = await self.client.publish(topic, data, qos=0, retain=retain)
        except aiomqtt.MqttCodeError as mqtt_code_exc:
            logger.warning("%s [MqttCodeError] -> %s", lp, mqtt_code_exc)
            self._connected = False
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err)
            self._connected = False
        else:
            return True
        return False

    async def subscribe(self, topic: str) -> bool:
        lp = f"{self.lp}subscribe:"
        if not self._connected or self.client is None:
            return False
        try:
            _ = await self.client.subscribe(topic, qos=0)
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s %s -> %s", lp, topic, mqtt_err)
            self._connected = False
            return False
        logger.debug("%s %s", lp, topic)
        return True
