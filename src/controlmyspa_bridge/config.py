"""Bridge configuration.

One :class:`BridgeConfig` is built at startup and handed to every component.
Sources, lowest precedence first: field defaults, a YAML file, the process
environment, CLI flags.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from controlmyspa_bridge.const import (
    DEFAULT_DISCOVERY_PREFIX,
    DEFAULT_HASS_STATUS_TOPIC,
    DEFAULT_MQTT_CONN_DELAY,
    DEFAULT_REFRESH_MINUTES,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_TOPIC_PREFIX,
    SETTLE_DELAY_MAX,
    SETTLE_DELAY_MIN,
    YES_ANSWER,
)
from controlmyspa_bridge.logging_abstraction import get_logger

logger = get_logger(__name__)

# env var -> config field
ENV_FIELDS: dict[str, str] = {
    "MQTTHOST": "mqtt_host",
    "MQTTPORT": "mqtt_port",
    "MQTTUSER": "mqtt_user",
    "MQTTPASS": "mqtt_pass",
    "HASSTOPIC": "hass_status_topic",
    "CONTROLMYSPA_USER": "spa_user",
    "CONTROLMYSPA_PASS": "spa_pass",
    "CONTROLMYSPA_CELSIUS": "celsius",
    "REFRESH_SPA": "refresh_minutes",
    "SPA_TOPIC_PREFIX": "topic_prefix",
    "SPA_DISCOVERY_PREFIX": "discovery_prefix",
    "SPA_SETTLE_DELAY": "settle_delay",
    "SPA_MQTT_CONN_DELAY": "mqtt_conn_delay",
    "SPA_API_TIMEOUT": "api_timeout",
    "SPA_DEBUG": "debug",
}


class ConfigError(ValueError):
    """The configuration cannot be used to start the bridge."""


class BridgeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_user: str | None = None
    mqtt_pass: str | None = None
    hass_status_topic: str = DEFAULT_HASS_STATUS_TOPIC
    spa_user: str = ""
    spa_pass: str = ""
    celsius: bool = True
    refresh_minutes: float = Field(default=DEFAULT_REFRESH_MINUTES, gt=0)
    topic_prefix: str = DEFAULT_TOPIC_PREFIX
    discovery_prefix: str = DEFAULT_DISCOVERY_PREFIX
    settle_delay: float = DEFAULT_SETTLE_DELAY
    mqtt_conn_delay: int = DEFAULT_MQTT_CONN_DELAY
    # 0 leaves the transport's own default in place
    api_timeout: float = Field(default=0.0, ge=0)
    debug: bool = False

    @field_validator("celsius", "debug", mode="before")
    @classmethod
    def _parse_flag(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().casefold() in YES_ANSWER
        return value

    @field_validator("mqtt_user", "mqtt_pass", mode="before")
    @classmethod
    def _blank_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("settle_delay")
    @classmethod
    def _clamp_settle_delay(cls, value: float) -> float:
        clamped = min(max(value, SETTLE_DELAY_MIN), SETTLE_DELAY_MAX)
        if clamped != value:
            logger.warning(
                "config: settle delay %.1fs outside %.0f-%.0fs, using %.1fs",
                value,
                SETTLE_DELAY_MIN,
                SETTLE_DELAY_MAX,
                clamped,
            )
        return clamped

    @field_validator("mqtt_conn_delay")
    @classmethod
    def _positive_conn_delay(cls, value: int) -> int:
        if value <= 0:
            logger.debug("config: MQTT connection delay %s is not positive, using 5", value)
            return 5
        return value

    @field_validator("topic_prefix", "discovery_prefix")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        value = value.strip().strip("/")
        if not value:
            msg = "topic prefixes must not be empty"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _require_account(self) -> BridgeConfig:
        if not self.spa_user or not self.spa_pass:
            msg = "ControlMySpa account missing, set CONTROLMYSPA_USER and CONTROLMYSPA_PASS"
            raise ValueError(msg)
        return self

    @property
    def refresh_interval(self) -> float:
        """Periodic refresh interval in seconds."""
        return self.refresh_minutes * 60

    @classmethod
    def load(
        cls,
        environ: Mapping[str, str] | None = None,
        yaml_path: Path | None = None,
        debug: bool = False,
    ) -> BridgeConfig:
        """Build the configuration from all sources.

        Args:
            environ: Environment to read, ``os.environ`` when None
            yaml_path: Optional YAML file with config field names as keys
            debug: ``--debug`` was given on the command line

        Raises:
            ConfigError: A source is unreadable or the result fails validation

        """
        values: dict[str, Any] = {}
        if yaml_path is not None:
            values.update(read_yaml(yaml_path))
        values.update(from_env(os.environ if environ is None else environ))
        if debug:
            values["debug"] = True
        try:
            return cls.model_validate(values)
        except ValueError as e:
            raise ConfigError(str(e)) from e


def from_env(environ: Mapping[str, str]) -> dict[str, str]:
    """Config fields present in ``environ``, keyed by field name."""
    return {field: environ[name] for name, field in ENV_FIELDS.items() if environ.get(name) not in (None, "")}


def read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.expanduser().open() as f:
            data: object = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    logger.debug("config: loaded %s", path, extra={"keys": sorted(str(k) for k in cast("dict[object, object]", data))})
    return cast("dict[str, Any]", data)
