import os

from controlmyspa_bridge import __version__

__all__ = [
    "BRIDGE_START_TASK_NAME",
    "CMS_API_BASE",
    "CMS_CONTROL_URL",
    "CMS_IDM_URL",
    "CMS_SPA_SEARCH_URL",
    "CMS_USER_AGENT",
    "DEFAULT_DISCOVERY_PREFIX",
    "DEFAULT_HASS_STATUS_TOPIC",
    "DEFAULT_MQTT_CONN_DELAY",
    "DEFAULT_REFRESH_MINUTES",
    "DEFAULT_SETTLE_DELAY",
    "DEFAULT_TOPIC_PREFIX",
    "DEFAULT_TOKEN_EXPIRES_IN",
    "HASS_BIRTH_MSG",
    "HASS_WILL_MSG",
    "HEATER_PORTS",
    "MQTT_CLIENT_START_TASK_NAME",
    "ORIGIN_STRUCT",
    "RENEWAL_MARGIN",
    "RENEWAL_RETRY_DELAY",
    "SETTLE_DELAY_MAX",
    "SETTLE_DELAY_MIN",
    "SPA_BRIDGE_LWT_MSG",
    "SPA_DEBUG",
    "SPA_LOG_FORMAT",
    "SPA_LOG_HUMAN_OUTPUT",
    "SPA_LOG_JSON_FILE",
    "SPA_MANUFACTURER_FALLBACK",
    "SPA_VERSION",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")

SPA_VERSION: str = __version__

# ControlMySpa cloud endpoints
CMS_API_BASE: str = "https://iot.controlmyspa.com"
CMS_IDM_URL: str = f"{CMS_API_BASE}/idm/tokenEndpoint"
CMS_SPA_SEARCH_URL: str = f"{CMS_API_BASE}/mobile/spas/search/findByUsername"
CMS_CONTROL_URL: str = f"{CMS_API_BASE}/mobile/control"
CMS_USER_AGENT: str = "ControlMySpa/3.0.2 (com.controlmyspa.qa; build:1; iOS 14.2.0) Alamofire/5.2.2"

# Token lifetime used when the cloud omits expires_in
DEFAULT_TOKEN_EXPIRES_IN: int = 3600
RENEWAL_MARGIN: float = 60.0
RENEWAL_RETRY_DELAY: float = 60.0

# Time the cloud needs before a written value shows up in a fresh read
DEFAULT_SETTLE_DELAY: float = 5.0
SETTLE_DELAY_MIN: float = 3.0
SETTLE_DELAY_MAX: float = 5.0

DEFAULT_REFRESH_MINUTES: float = 10.0
DEFAULT_MQTT_CONN_DELAY: int = 10
DEFAULT_TOPIC_PREFIX: str = "controlmyspa"
DEFAULT_DISCOVERY_PREFIX: str = "homeassistant"
DEFAULT_HASS_STATUS_TOPIC: str = "homeassistant/status"
HASS_BIRTH_MSG: str = os.environ.get("SPA_HASS_BIRTH_MSG", "online")
HASS_WILL_MSG: str = os.environ.get("SPA_HASS_WILL_MSG", "offline")
SPA_BRIDGE_LWT_MSG: bytes = b"offline"

# The cloud stops reporting heaters that are off
HEATER_PORTS: tuple[int, ...] = (0, 1)

SPA_MANUFACTURER_FALLBACK: str = "Balboa"
BRIDGE_START_TASK_NAME = "SpaBridge_START"
MQTT_CLIENT_START_TASK_NAME = "MQTTClient_START"

ORIGIN_STRUCT = {
    "name": "controlmyspa-bridge",
    "sw_version": SPA_VERSION,
}

SPA_DEBUG = os.environ.get("SPA_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
SPA_LOG_FORMAT: str = os.environ.get("SPA_LOG_FORMAT", "human")  # "json", "human", or "both"
SPA_LOG_JSON_FILE: str = os.environ.get("SPA_LOG_JSON_FILE", "")
SPA_LOG_HUMAN_OUTPUT: str = os.environ.get("SPA_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or file path
