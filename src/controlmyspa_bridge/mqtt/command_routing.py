"""Inbound MQTT message handling.

Every message on a subscribed topic is handed to the bridge in its own task,
with its own correlation id, so a slow cloud call never holds up the receiver.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from controlmyspa_bridge.correlation import event_context
from controlmyspa_bridge.logging_abstraction import get_logger

if TYPE_CHECKING:
    from controlmyspa_bridge.mqtt.client import MQTTClient

logger = get_logger(__name__)


class CommandRouter:
    """Helper class for routing MQTT messages to the bridge."""

    def __init__(self, mqtt_client: MQTTClient) -> None:
        """Initialize the command router.

        Args:
            mqtt_client: MQTTClient instance to access connection and bridge handler

        """
        self.client: MQTTClient = mqtt_client
        self.tasks: set[asyncio.Task[None]] = set()

    async def handle_message(self, topic: str, payload: bytes) -> None:
        lp = f"{self.client.lp}rcv:"
        handler = self.client.handler
        with event_context("mqtt"):
            if handler is None:
                logger.debug("%s no handler bound, dropping message on %s", lp, topic)
                return
            try:
                await handler.on_inbound_message(topic, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s handling message on %s failed", lp, topic)

    def _spawn(self, topic: str, payload: bytes) -> None:
        task = asyncio.create_task(self.handle_message(topic, payload), name=f"mqtt_msg:{topic}")
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def start_receiver_task(self) -> None:
        """Start listening for MQTT messages on subscribed topics"""
        lp = f"{self.client.lp}rcv:"
        assert self.client.client is not None, "client must be initialized"
        async for message in self.client.client.messages:
            topic = message.topic.value
            payload = message.payload
            if isinstance(payload, str):
                payload = payload.encode()
            if not isinstance(payload, (bytes, bytearray)) or not payload:
                logger.debug("%s Received empty/None payload (%r) for topic: %s , skipping...", lp, payload, topic)
                continue

            logger.debug(
                "%s >>> MQTT MESSAGE RECEIVED: topic=%s, payload=%s",
                lp,
                topic,
                bytes(payload).decode(errors="replace"),
            )
            self._spawn(topic, bytes(payload))

    async def stop(self) -> None:
        for task in list(self.tasks):
            _ = task.cancel()
        if self.tasks:
            _ = await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
