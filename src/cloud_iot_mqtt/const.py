import os

from cloud_iot_mqtt import __version__

__all__ = [
    "CLOUD_IOT_DEBUG",
    "CLOUD_IOT_LOG_FORMAT",
    "CLOUD_IOT_LOG_HUMAN_OUTPUT",
    "CLOUD_IOT_LOG_JSON_FILE",
    "CLOUD_IOT_PERF_THRESHOLD_MS",
    "CLOUD_IOT_PERF_TRACKING",
    "CLOUD_IOT_VERSION",
    "DEFAULT_KEEPALIVE",
    "DEFAULT_MQTT_HOST",
    "DEFAULT_MQTT_PORT",
    "DEFAULT_MQTT_USERNAME",
    "DEFAULT_QOS_COMMANDS",
    "DEFAULT_QOS_CONFIGURATION",
    "DEFAULT_RECONNECT_PERIOD",
    "DEFAULT_TOKEN_ALGORITHM",
    "DEFAULT_TOKEN_LIFECYCLE",
    "MAX_TOKEN_LIFECYCLE",
    "MIN_TOKEN_LIFECYCLE",
    "PEM_FOOTER_MARKER",
    "PEM_HEADER_MARKER",
    "SESSION_START_TASK_NAME",
    "SUPPORTED_ALGORITHMS",
    "SUPPORTED_QOS",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
CLOUD_IOT_VERSION: str = __version__

# Broker defaults for the managed MQTT bridge
DEFAULT_MQTT_HOST: str = "mqtt.googleapis.com"
DEFAULT_MQTT_PORT: int = 8883
# The bridge ignores the username, but paho only sends a password alongside one.
DEFAULT_MQTT_USERNAME: str = "gcic-mqtt-client"
DEFAULT_KEEPALIVE: int = 60
DEFAULT_RECONNECT_PERIOD: float = 5.0

# Token settings
SUPPORTED_ALGORITHMS: tuple[str, ...] = ("RS256", "ES256")
DEFAULT_TOKEN_ALGORITHM: str = "RS256"
DEFAULT_TOKEN_LIFECYCLE: int = 3600  # 1 hour
MIN_TOKEN_LIFECYCLE: int = 1
MAX_TOKEN_LIFECYCLE: int = 86400  # 24 hours, the bridge rejects anything longer
PEM_HEADER_MARKER: str = "-----BEGIN"
PEM_FOOTER_MARKER: str = "KEY-----"

SUPPORTED_QOS: tuple[int, ...] = (0, 1)
DEFAULT_QOS_CONFIGURATION: int = 1
DEFAULT_QOS_COMMANDS: int = 0

SESSION_START_TASK_NAME = "DeviceSession_START"

CLOUD_IOT_DEBUG: bool = os.environ.get("CLOUD_IOT_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
CLOUD_IOT_LOG_FORMAT: str = os.environ.get("CLOUD_IOT_LOG_FORMAT", "human")  # "json", "human", or "both"
CLOUD_IOT_LOG_JSON_FILE: str | None = os.environ.get("CLOUD_IOT_LOG_JSON_FILE") or None
CLOUD_IOT_LOG_HUMAN_OUTPUT: str = os.environ.get("CLOUD_IOT_LOG_HUMAN_OUTPUT", "stderr")  # "stdout", "stderr" or path

# Performance Instrumentation
CLOUD_IOT_PERF_TRACKING: bool = os.environ.get("CLOUD_IOT_PERF_TRACKING", "true").casefold() in YES_ANSWER
_perf_threshold = os.environ.get("CLOUD_IOT_PERF_THRESHOLD_MS", "250")
CLOUD_IOT_PERF_THRESHOLD_MS: int = int(_perf_threshold) if _perf_threshold and _perf_threshold.isdigit() else 250
