"""Inbound topic routing for a single device namespace.

Only two inbound shapes exist:

    /devices/{device_id}/config
    /devices/{device_id}/commands[/{subfolder}]

Anything else is dropped without error. The broker may deliver topics this
client never asked for, and rejecting them would break otherwise healthy
sessions.
"""

from __future__ import annotations

import inspect

from cloud_iot_mqtt.logging_abstraction import get_logger
from cloud_iot_mqtt.structs import Channel, MessageCallback, RoutedMessage, Subscription

__all__ = ["TopicRouter"]

logger = get_logger(__name__)


class TopicRouter:
    """Dispatch table from inbound channel to its (optional) subscription."""

    lp: str = "router:"

    def __init__(self, namespace_root: str) -> None:
        """Initialize the router.

        Args:
            namespace_root: Device topic prefix, ``/devices/{device_id}``

        """
        self.namespace_root: str = namespace_root
        self.device_id: str = namespace_root.rsplit("/", 1)[-1]
        self._table: dict[Channel, Subscription | None] = dict.fromkeys(Channel)

    def register(self, channel: Channel, callback: MessageCallback, qos: int) -> Subscription:
        subscription = Subscription(channel=channel, callback=callback, qos=qos)
        self._table[channel] = subscription
        return subscription

    def subscription(self, channel: Channel) -> Subscription | None:
        return self._table[channel]

    def subscriptions(self) -> list[Subscription]:
        """Registered subscriptions, configuration first."""
        return [sub for sub in self._table.values() if sub is not None]

    def subscription_topic(self, channel: Channel) -> str:
        """Topic filter to subscribe to for ``channel``."""
        if channel is Channel.COMMAND:
            return f"{self.namespace_root}/{Channel.COMMAND.value}/#"
        return f"{self.namespace_root}/{channel.value}"

    def parse(self, topic: str, payload: bytes = b"") -> RoutedMessage | None:
        """Match ``topic`` against the device namespace without dispatching."""
        parts = topic.split("/")
        if len(parts) < 4 or parts[0] != "" or parts[1] != "devices" or parts[2] != self.device_id:
            return None
        if parts[3] == Channel.CONFIGURATION.value:
            return RoutedMessage(Channel.CONFIGURATION, payload)
        if parts[3] == Channel.COMMAND.value:
            subfolder = parts[4] if len(parts) > 4 and parts[4] else None
            return RoutedMessage(Channel.COMMAND, payload, subfolder)
        return None

    async def route(self, topic: str, payload: bytes) -> RoutedMessage | None:
        """Invoke the callback registered for ``topic``'s channel.

        Configuration callbacks get ``(payload)``, command callbacks get
        ``(payload, subfolder)``. Coroutine callbacks are awaited.

        Returns:
            The routed message, or None when the topic was dropped

        """
        lp = f"{self.lp}route:"
        routed = self.parse(topic, payload)
        if routed is None:
            logger.debug("%s Ignoring message on unrecognized topic: %s", lp, topic)
            return None

        subscription = self._table[routed.channel]
        if subscription is None:
            logger.debug("%s No %s callback registered, dropping: %s", lp, routed.channel.value, topic)
            return None

        logger.debug(
            "%s Dispatching %s message",
            lp,
            routed.channel.value,
            extra={"topic": topic, "subfolder": routed.subfolder, "payload_len": len(payload)},
        )
        if routed.channel is Channel.CONFIGURATION:
            result = subscription.callback(payload)
        else:
            result = subscription.callback(payload, routed.subfolder)
        if inspect.isawaitable(result):
            await result
        return routed
