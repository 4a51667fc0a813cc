"""MQTT connection helper for devices authenticating with short-lived JWTs.

Wraps an aiomqtt session with token issuance, half-life token renewal on
reconnect, and routing of configuration / command messages to callbacks.
"""

from __future__ import annotations

__version__ = "0.4.0"

import asyncio
from typing import Any

from cloud_iot_mqtt.config import SessionOptions, load_options
from cloud_iot_mqtt.const import SESSION_START_TASK_NAME
from cloud_iot_mqtt.exceptions import (
    CloudIotError,
    CredentialIssuanceFailed,
    InvalidArgument,
    InvalidConfiguration,
)
from cloud_iot_mqtt.identity import SessionIdentity, resolve_identity
from cloud_iot_mqtt.lifecycle import CredentialManager
from cloud_iot_mqtt.mqtt import DeviceSession, TopicRouter
from cloud_iot_mqtt.structs import Channel, CredentialState, SessionEvent, TokenAlgorithm

__all__ = [
    "Channel",
    "CloudIotError",
    "CredentialIssuanceFailed",
    "CredentialManager",
    "CredentialState",
    "DeviceSession",
    "InvalidArgument",
    "InvalidConfiguration",
    "SessionEvent",
    "SessionIdentity",
    "SessionOptions",
    "TokenAlgorithm",
    "TopicRouter",
    "__version__",
    "connect",
    "load_options",
    "resolve_identity",
]


def connect(options: SessionOptions | None = None, /, **kwargs: Any) -> DeviceSession:
    """Create a DeviceSession and start its connection loop on the running event loop.

    Raises the same errors as DeviceSession() when the options are invalid or the
    initial token cannot be signed. Must be called from inside a running loop.
    """
    session = DeviceSession(options, **kwargs)
    session.start_task = asyncio.create_task(session.start(), name=SESSION_START_TASK_NAME)
    return session
