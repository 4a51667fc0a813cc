"""Device identity and the topic namespace derived from it."""

from __future__ import annotations

from dataclasses import dataclass

from cloud_iot_mqtt.exceptions import InvalidConfiguration

__all__ = ["SessionIdentity", "resolve_identity"]


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    """Project / region / registry / device coordinates of one MQTT session."""

    project_id: str
    registry_id: str
    device_id: str
    cloud_region: str

    @property
    def namespace_root(self) -> str:
        return f"/devices/{self.device_id}"

    @property
    def session_identifier(self) -> str:
        """Fully-qualified device path the bridge expects as the MQTT client id."""
        return (
            f"projects/{self.project_id}"
            f"/locations/{self.cloud_region}"
            f"/registries/{self.registry_id}"
            f"/devices/{self.device_id}"
        )

    @property
    def state_topic(self) -> str:
        return f"{self.namespace_root}/state"

    @property
    def config_topic(self) -> str:
        return f"{self.namespace_root}/config"

    @property
    def commands_topic(self) -> str:
        return f"{self.namespace_root}/commands"

    @property
    def commands_subscription(self) -> str:
        return f"{self.commands_topic}/#"

    def events_topic(self, subfolder: str | None = None) -> str:
        topic = f"{self.namespace_root}/events"
        return topic if subfolder is None else f"{topic}/{subfolder}"


def _require_text(field: str, value: object) -> str:
    if not isinstance(value, str):
        raise InvalidConfiguration(field, f"expected a string, got {type(value).__name__}")
    if not value:
        raise InvalidConfiguration(field, "must not be empty")
    return value


def resolve_identity(project_id: object, registry_id: object, device_id: object, cloud_region: object) -> SessionIdentity:
    """Validate the four identity strings and build a SessionIdentity.

    Raises:
        InvalidConfiguration: If any value is not a non-empty string

    """
    return SessionIdentity(
        project_id=_require_text("projectId", project_id),
        registry_id=_require_text("registryId", registry_id),
        device_id=_require_text("deviceId", device_id),
        cloud_region=_require_text("cloudRegion", cloud_region),
    )
