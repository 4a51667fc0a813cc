"""Session options.

Options may be given in snake_case or camelCase (``project_id`` or ``projectId``).
Anything the transport understands beyond the named fields goes in
``transport_options`` and is handed to ``aiomqtt.Client`` unmodified.
"""

from __future__ import annotations

import functools
import inspect
import os
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any

import aiomqtt
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from cloud_iot_mqtt.const import (
    DEFAULT_KEEPALIVE,
    DEFAULT_MQTT_HOST,
    DEFAULT_MQTT_PORT,
    DEFAULT_MQTT_USERNAME,
    DEFAULT_QOS_COMMANDS,
    DEFAULT_QOS_CONFIGURATION,
    DEFAULT_RECONNECT_PERIOD,
    DEFAULT_TOKEN_LIFECYCLE,
    MAX_TOKEN_LIFECYCLE,
    MIN_TOKEN_LIFECYCLE,
)
from cloud_iot_mqtt.credentials import coerce_algorithm, normalize_private_key
from cloud_iot_mqtt.exceptions import InvalidConfiguration
from cloud_iot_mqtt.structs import TokenAlgorithm

__all__ = ["SessionOptions", "load_options", "merge_options"]

IdentityField = Annotated[str, Field(strict=True, min_length=1)]
QoSField = Annotated[int, Field(strict=True, ge=0, le=1)]

# aiomqtt.Client keywords the session derives from the named options
RESERVED_TRANSPORT_KEYS = frozenset(
    {
        "hostname",
        "port",
        "username",
        "password",
        "identifier",
        "keepalive",
        "timeout",
        "bind_address",
        "tls_context",
    },
)


@functools.cache
def _client_keywords() -> frozenset[str] | None:
    """Keyword names aiomqtt.Client accepts, or None if it takes arbitrary ones."""
    params = inspect.signature(aiomqtt.Client).parameters.values()
    if any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params):
        return None
    return frozenset(p.name for p in params if p.kind is not inspect.Parameter.VAR_POSITIONAL)


class SessionOptions(BaseModel):
    """Validated options for one device session."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    # Identity
    project_id: IdentityField
    registry_id: IdentityField
    device_id: IdentityField
    cloud_region: IdentityField

    # Credentials
    private_key: str
    token_algorithm: TokenAlgorithm = TokenAlgorithm.RS256
    token_lifecycle: Annotated[
        int,
        Field(strict=True, ge=MIN_TOKEN_LIFECYCLE, le=MAX_TOKEN_LIFECYCLE),
    ] = DEFAULT_TOKEN_LIFECYCLE

    # Inbound channels, subscribed only when a callback is given
    on_configuration: Callable[[bytes], Any] | None = None
    on_command: Callable[[bytes, str | None], Any] | None = None
    qos_configuration: QoSField = DEFAULT_QOS_CONFIGURATION
    qos_commands: QoSField = DEFAULT_QOS_COMMANDS

    # Transport
    host: str = DEFAULT_MQTT_HOST
    port: Annotated[int, Field(ge=1, le=65535)] = DEFAULT_MQTT_PORT
    username: str = DEFAULT_MQTT_USERNAME
    tls: bool = True
    keepalive: Annotated[int, Field(ge=0)] = DEFAULT_KEEPALIVE
    reconnect_period: float = DEFAULT_RECONNECT_PERIOD
    connect_timeout: Annotated[float, Field(gt=0)] | None = None
    bind_address: str = ""
    transport_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("private_key", mode="before")
    @classmethod
    def _check_private_key(cls, value: object) -> str:
        return normalize_private_key(value)

    @field_validator("token_algorithm", mode="before")
    @classmethod
    def _check_algorithm(cls, value: object) -> TokenAlgorithm:
        return coerce_algorithm(value)

    @field_validator("transport_options")
    @classmethod
    def _check_transport_options(cls, value: dict[str, Any]) -> dict[str, Any]:
        reserved = sorted(RESERVED_TRANSPORT_KEYS.intersection(value))
        if reserved:
            msg = f"set by the session, not transport options: {', '.join(reserved)}"
            raise ValueError(msg)
        accepted = _client_keywords()
        unknown = sorted(set(value) - accepted) if accepted is not None else []
        if unknown:
            msg = f"not accepted by aiomqtt.Client: {', '.join(unknown)}"
            raise ValueError(msg)
        return value

    @classmethod
    def from_env(cls, **overrides: Any) -> SessionOptions:
        """Build options from CLOUD_IOT_* environment variables.

        Reads CLOUD_IOT_PROJECT_ID, CLOUD_IOT_REGISTRY_ID, CLOUD_IOT_DEVICE_ID,
        CLOUD_IOT_CLOUD_REGION, CLOUD_IOT_PRIVATE_KEY_FILE, CLOUD_IOT_TOKEN_ALGORITHM,
        CLOUD_IOT_TOKEN_LIFECYCLE, CLOUD_IOT_MQTT_HOST and CLOUD_IOT_MQTT_PORT.
        Keyword ``overrides`` win over the environment.

        Raises:
            InvalidConfiguration: If a variable is missing, malformed or unreadable

        """
        env = os.environ
        values: dict[str, Any] = {
            "project_id": env.get("CLOUD_IOT_PROJECT_ID"),
            "registry_id": env.get("CLOUD_IOT_REGISTRY_ID"),
            "device_id": env.get("CLOUD_IOT_DEVICE_ID"),
            "cloud_region": env.get("CLOUD_IOT_CLOUD_REGION"),
        }

        key_file = env.get("CLOUD_IOT_PRIVATE_KEY_FILE")
        if key_file and "private_key" not in overrides:
            try:
                values["private_key"] = Path(key_file).expanduser().read_bytes()
            except OSError as e:
                raise InvalidConfiguration("CLOUD_IOT_PRIVATE_KEY_FILE", f"cannot read {key_file}: {e}") from e

        if algorithm := env.get("CLOUD_IOT_TOKEN_ALGORITHM"):
            values["token_algorithm"] = algorithm
        values.update(
            _int_from_env("CLOUD_IOT_TOKEN_LIFECYCLE", "token_lifecycle")
            | _int_from_env("CLOUD_IOT_MQTT_PORT", "port"),
        )
        if host := env.get("CLOUD_IOT_MQTT_HOST"):
            values["host"] = host

        values = {k: v for k, v in values.items() if v is not None}
        values.update(_by_field_name(overrides))
        return load_options(**values)


def _int_from_env(var: str, field: str) -> dict[str, int]:
    raw = os.environ.get(var)
    if not raw:
        return {}
    try:
        return {field: int(raw)}
    except ValueError as e:
        raise InvalidConfiguration(var, f"expected an integer, got {raw!r}") from e


def load_options(**kwargs: Any) -> SessionOptions:
    """Validate keyword options into a SessionOptions.

    Raises:
        InvalidConfiguration: For the first invalid, missing or unknown option

    """
    try:
        return SessionOptions.model_validate(kwargs)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "options"
        raise InvalidConfiguration(field, first["msg"]) from e


def _by_field_name(options: dict[str, Any]) -> dict[str, Any]:
    """Rename camelCase keys to field names; unknown keys pass through for validation to reject."""
    aliases = {field.alias: name for name, field in SessionOptions.model_fields.items() if field.alias}
    return {aliases.get(key, key): value for key, value in options.items()}


def merge_options(base: SessionOptions, **overrides: Any) -> SessionOptions:
    """Re-validate ``base`` with ``overrides`` (snake_case or camelCase) applied on top.

    Raises:
        InvalidConfiguration: If the merged options are invalid

    """
    return load_options(**(base.model_dump() | _by_field_name(overrides)))
