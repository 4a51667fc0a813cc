"""MQTT session and inbound routing."""

from cloud_iot_mqtt.mqtt.session import DeviceSession
from cloud_iot_mqtt.mqtt.topics import TopicRouter

__all__ = ["DeviceSession", "TopicRouter"]
