"""Core data structures shared by the credential, routing and session modules."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum, StrEnum

ConfigurationCallback = Callable[[bytes], Awaitable[None] | None]
CommandCallback = Callable[[bytes, str | None], Awaitable[None] | None]
MessageCallback = ConfigurationCallback | CommandCallback


class TokenAlgorithm(StrEnum):
    """JWT signing algorithms accepted by the MQTT bridge."""

    RS256 = "RS256"
    ES256 = "ES256"


class Channel(StrEnum):
    """Inbound channels, valued by their topic segment after the device id."""

    CONFIGURATION = "config"
    COMMAND = "commands"


class SessionEvent(StrEnum):
    """Lifecycle notifications a DeviceSession dispatches to registered handlers.

    Handler signatures:
        CONNECT()
        DISCONNECT(token_expired: bool)
        TOKEN_RENEWAL(expires_at: int)
        ERROR(exc: Exception)
    """

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    TOKEN_RENEWAL = "token_renewal"
    ERROR = "error"


class CredentialState(Enum):
    """Where the current token sits within its validity window."""

    FRESH = "fresh"
    VALID = "valid"
    STALE_HALF = "stale_half"
    EXPIRED = "expired"


@dataclass
class Credential:
    """Signed token plus everything needed to mint its replacement."""

    algorithm: TokenAlgorithm
    private_key: str
    token: str
    issued_at: int
    expires_at: int
    lifecycle: int

    def remaining(self, now: int) -> int:
        """Seconds until expiry at ``now`` (negative once expired)."""
        return self.expires_at - now


@dataclass(frozen=True, slots=True)
class Subscription:
    """A registered inbound channel."""

    channel: Channel
    callback: MessageCallback
    qos: int


@dataclass(frozen=True, slots=True)
class RoutedMessage:
    """Result of matching an inbound topic against the device namespace."""

    channel: Channel
    payload: bytes
    subfolder: str | None = None
