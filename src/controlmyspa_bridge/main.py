from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import dotenv
import uvloop

from controlmyspa_bridge.bridge import BridgeController
from controlmyspa_bridge.cloud_api import ControlMySpaAPI
from controlmyspa_bridge.config import BridgeConfig, ConfigError
from controlmyspa_bridge.const import BRIDGE_START_TASK_NAME, MQTT_CLIENT_START_TASK_NAME, SPA_DEBUG, SPA_VERSION
from controlmyspa_bridge.correlation import event_context
from controlmyspa_bridge.exceptions import CredentialInvalidError
from controlmyspa_bridge.logging_abstraction import get_logger, quiet_foreign_loggers, set_global_level
from controlmyspa_bridge.mqtt import MQTTClient
from controlmyspa_bridge.scheduler import AsyncioScheduler
from controlmyspa_bridge.utils import check_python_version

logger = get_logger(__name__)

EXIT_CONFIG = 2
EXIT_CREDENTIALS = 3


class SpaBridgeApp:
    """Owns the event loop wiring: cloud API, MQTT client and bridge controller."""

    lp: str = "SpaBridgeApp:"

    def __init__(self, config: BridgeConfig) -> None:
        self.config: BridgeConfig = config
        self.api: ControlMySpaAPI = ControlMySpaAPI(config.spa_user, config.spa_pass, config.api_timeout)
        self.scheduler: AsyncioScheduler = AsyncioScheduler()
        self.mqtt_client: MQTTClient = MQTTClient(config)
        self.bridge: BridgeController = BridgeController(config, self.api, self.scheduler, self.mqtt_client)
        self.mqtt_client.set_handler(self.bridge)
        self._stopping: asyncio.Event | None = None

    def request_stop(self, signum: int) -> None:
        logger.info("%s Intercepted signal: %s (%s)", self.lp, signal.Signals(signum).name, signum)
        if self._stopping is not None:
            self._stopping.set()

    async def run(self) -> None:
        """Start everything and run until a stop signal.

        Raises:
            CredentialInvalidError: The ControlMySpa account was refused at startup

        """
        lp = f"{self.lp}run:"
        loop = asyncio.get_running_loop()
        self._stopping = asyncio.Event()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop, signum)
        logger.debug("%s Signal handlers configured for SIGINT & SIGTERM", lp)

        self.mqtt_client.start_task = mqtt_task = asyncio.create_task(
            self.mqtt_client.start(),
            name=MQTT_CLIENT_START_TASK_NAME,
        )
        bridge_task = asyncio.create_task(self.bridge.start(), name=BRIDGE_START_TASK_NAME)
        try:
            await bridge_task
            _ = await self._stopping.wait()
        finally:
            await self.bridge.stop()
            await self.mqtt_client.stop()
            if not mqtt_task.done():
                _ = mqtt_task.cancel()
            await self.api.close()
            logger.info("%s stopped", lp)


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ControlMySpa to MQTT bridge")
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument("--config", help="Path to a YAML config file", default=None, type=Path)
    return parser.parse_args(argv)


def load_env_file(env_file: Path) -> bool:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return False
    loaded_any = dotenv.load_dotenv(env_path, override=True)
    if loaded_any:
        logger.info("Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return loaded_any


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the spa bridge."""
    with event_context("cli"):
        logger.info("Starting ControlMySpa bridge", extra={"version": SPA_VERSION})
        args = parse_cli(argv)
        check_python_version()
        quiet_foreign_loggers()

        if args.env:
            _ = load_env_file(args.env)

        try:
            config = BridgeConfig.load(yaml_path=args.config, debug=args.debug)
        except ConfigError as e:
            logger.critical("Invalid configuration", extra={"error": str(e)})
            return EXIT_CONFIG

        if config.debug or SPA_DEBUG:
            set_global_level(logging.DEBUG)
            logger.info("Debug logging enabled")

        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        app = SpaBridgeApp(config)
        try:
            asyncio.run(app.run())
        except CredentialInvalidError as e:
            logger.critical(
                "ControlMySpa login refused, check CONTROLMYSPA_USER / CONTROLMYSPA_PASS",
                extra={"error": str(e)},
            )
            return EXIT_CREDENTIALS
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        else:
            logger.info("ControlMySpa bridge stopped gracefully")
        return 0


if __name__ == "__main__":
    sys.exit(main())
