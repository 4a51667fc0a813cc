"""Device session: an aiomqtt connection authenticated with a renewable JWT.

The session wraps (rather than extends) the transport. Each pass of the
reconnect loop builds a fresh ``aiomqtt.Client`` carrying the current token,
so a renewal decided after a disconnect is always in place before the next
connection attempt.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import ssl
from collections.abc import Callable
from typing import Any, Self

import aiomqtt

from cloud_iot_mqtt.config import SessionOptions, load_options, merge_options
from cloud_iot_mqtt.const import DEFAULT_RECONNECT_PERIOD, SESSION_START_TASK_NAME, SUPPORTED_QOS
from cloud_iot_mqtt.correlation import correlation_context
from cloud_iot_mqtt.exceptions import InvalidArgument
from cloud_iot_mqtt.identity import SessionIdentity, resolve_identity
from cloud_iot_mqtt.lifecycle import CredentialManager
from cloud_iot_mqtt.logging_abstraction import get_logger
from cloud_iot_mqtt.mqtt.topics import TopicRouter
from cloud_iot_mqtt.structs import Channel, Credential, SessionEvent, TokenAlgorithm

__all__ = ["DeviceSession", "EventHandler"]

logger = get_logger(__name__)

EventHandler = Callable[..., Any]
Payload = str | bytes | bytearray


def _validate_qos(qos: object) -> int:
    if isinstance(qos, bool) or not isinstance(qos, int) or qos not in SUPPORTED_QOS:
        raise InvalidArgument("qos", f"expected 0 or 1, got {qos!r}")
    return qos


def _running_on(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class DeviceSession:
    """MQTT session for one device, with token renewal and inbound routing.

    Construction validates the options, signs the first token and registers a
    subscription for each supplied callback; ``start()`` (or ``async with``)
    runs the connection loop.
    """

    lp: str = "session:"

    def __init__(self, options: SessionOptions | None = None, /, **kwargs: Any) -> None:
        """Initialize the session.

        Args:
            options: Pre-validated options; when omitted, ``kwargs`` are validated instead
            **kwargs: Options by snake_case or camelCase name (see SessionOptions)

        Raises:
            InvalidConfiguration: If an option is missing or malformed
            CredentialIssuanceFailed: If the initial token cannot be signed

        """
        if options is None:
            options = load_options(**kwargs)
        elif kwargs:
            options = merge_options(options, **kwargs)
        self.options: SessionOptions = options
        opts = self.options

        self.identity: SessionIdentity = resolve_identity(
            opts.project_id,
            opts.registry_id,
            opts.device_id,
            opts.cloud_region,
        )
        self._event_handlers: dict[SessionEvent, EventHandler | None] = dict.fromkeys(SessionEvent)
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self.credentials: CredentialManager = CredentialManager(
            opts.token_algorithm,
            opts.private_key,
            audience=opts.project_id,
            lifecycle=opts.token_lifecycle,
            notify=self._emit,
        )

        self.router: TopicRouter = TopicRouter(self.identity.namespace_root)
        if opts.on_configuration is not None:
            _ = self.router.register(Channel.CONFIGURATION, opts.on_configuration, opts.qos_configuration)
        if opts.on_command is not None:
            _ = self.router.register(Channel.COMMAND, opts.on_command, opts.qos_commands)

        self.client: aiomqtt.Client | None = None
        self.start_task: asyncio.Task[None] | None = None
        self._connected: bool = False

        logger.info(
            "%s Session prepared",
            self.lp,
            extra={
                "client_id": self.identity.session_identifier,
                "host": opts.host,
                "port": opts.port,
                "channels": [sub.channel.value for sub in self.router.subscriptions()],
            },
        )

    async def __aenter__(self) -> Self:
        self._loop = asyncio.get_running_loop()
        if self.start_task is None or self.start_task.done():
            self.start_task = asyncio.create_task(self.start(), name=SESSION_START_TASK_NAME)
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.stop()

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Lifecycle notifications

    def set_event_handler(self, event: SessionEvent, handler: EventHandler | None) -> None:
        """Register (or with None, clear) the single handler for ``event``.

        Handlers may be plain functions or coroutine functions. Coroutines are
        scheduled on the loop running the session, also when the event is raised
        from another thread (e.g. ``renew_token()`` via ``asyncio.to_thread``).
        """
        self._event_handlers[SessionEvent(event)] = handler

    def clear_event_handler(self, event: SessionEvent) -> None:
        self._event_handlers[SessionEvent(event)] = None

    def _emit(self, event: SessionEvent, *args: object) -> None:
        handler = self._event_handlers[event]
        if handler is None:
            return
        loop = self._loop
        if loop is not None and loop.is_running() and not _running_on(loop):
            # Emitted from another thread, e.g. renew_token() via asyncio.to_thread
            _ = loop.call_soon_threadsafe(self._dispatch, event, handler, args)
            return
        self._dispatch(event, handler, args)

    def _dispatch(self, event: SessionEvent, handler: EventHandler, args: tuple[object, ...]) -> None:
        try:
            result = handler(*args)
            if not inspect.isawaitable(result):
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                if inspect.iscoroutine(result):
                    result.close()
                logger.warning("%s %s handler is async but no event loop is running", self.lp, event.value)
                return
            task = asyncio.ensure_future(result, loop=loop)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        except Exception:
            logger.exception("%s %s handler raised", self.lp, event.value)

    # Connection loop

    def _build_client(self) -> aiomqtt.Client:
        opts = self.options
        return aiomqtt.Client(
            hostname=opts.host,
            port=opts.port,
            username=opts.username,
            password=self.credentials.token,
            identifier=self.identity.session_identifier,
            keepalive=opts.keepalive,
            timeout=opts.connect_timeout,
            bind_address=opts.bind_address,
            tls_context=ssl.create_default_context() if opts.tls else None,
            **opts.transport_options,
        )

    def _get_reconnect_delay(self, lp: str) -> float:
        delay = self.options.reconnect_period
        if delay <= 0:
            logger.debug("%s Reconnect period %s is not positive, using %s", lp, delay, DEFAULT_RECONNECT_PERIOD)
            return DEFAULT_RECONNECT_PERIOD
        return delay

    async def connect(self) -> bool:
        """Open one MQTT connection with the current token. Returns True on success."""
        lp = f"{self.lp}connect:"
        self._connected = False
        client = self._build_client()
        logger.debug(
            "%s Connecting to MQTT bridge...",
            lp,
            extra={"host": self.options.host, "port": self.options.port, "expires_at": self.credentials.expires_at},
        )
        try:
            _ = await client.__aenter__()
        except aiomqtt.MqttError as mqtt_err:
            # Includes CONNACK refusals, e.g. an expired or mis-signed token
            logger.warning("%s Connection failed: %s", lp, mqtt_err)
            self._emit(SessionEvent.ERROR, mqtt_err)
            return False

        self.client = client
        self._connected = True
        logger.info(
            "%s Connected to MQTT bridge: %s port: %s",
            lp,
            self.options.host,
            self.options.port,
        )
        self._emit(SessionEvent.CONNECT)
        return True

    async def _subscribe(self, lp: str) -> None:
        assert self.client is not None, "client must be connected"
        for subscription in self.router.subscriptions():
            topic = self.router.subscription_topic(subscription.channel)
            _ = await self.client.subscribe(topic, qos=subscription.qos)
            logger.debug("%s Subscribed", lp, extra={"topic": topic, "qos": subscription.qos})

    async def _handle_message(self, message: aiomqtt.Message) -> None:
        lp = f"{self.lp}rcv:"
        payload = message.payload
        if payload is None:
            payload = b""
        elif not isinstance(payload, bytes):
            payload = str(payload).encode()
        try:
            _ = await self.router.route(message.topic.value, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s Callback failed for topic %s", lp, message.topic.value)

    async def _start_receiver(self, lp: str) -> None:
        await self._subscribe(lp)
        assert self.client is not None, "client must be connected"
        logger.debug("%s Waiting for MQTT messages...", lp)
        async for message in self.client.messages:
            await self._handle_message(message)

    async def _close_client(self, lp: str) -> None:
        client, self.client = self.client, None
        self._connected = False
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as mqtt_err:
            logger.debug("%s Disconnect reported: %s", lp, mqtt_err)

    async def start(self) -> None:
        """Connect, receive, and on every session loss let the lifecycle manager decide about the token.

        Transport errors are reported through the ERROR event and never raised.
        Runs until cancelled.
        """
        lp = f"{self.lp}start:"
        self._loop = asyncio.get_running_loop()
        itr = 0
        while True:
            itr += 1
            with correlation_context():
                if await self.connect():
                    try:
                        await self._start_receiver(lp)
                    except aiomqtt.MqttError as mqtt_err:
                        logger.warning("%s MQTT session lost: %s", lp, mqtt_err)
                        self._emit(SessionEvent.ERROR, mqtt_err)
                    finally:
                        await self._close_client(lp)
                # Must finish before the next _build_client() reads the token
                _ = self.credentials.on_session_lost()

            delay = self._get_reconnect_delay(lp)
            logger.info(
                "%s Reconnecting in %s seconds...",
                lp,
                delay,
                extra={"attempt": itr},
            )
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        """Cancel the connection loop and disconnect from the broker."""
        lp = f"{self.lp}stop:"
        task = self.start_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            logger.debug("%s Cancelling start task", lp)
            _ = task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_client(lp)
        logger.info("%s Disconnected from MQTT bridge", lp)

    # Publishing

    async def publish(self, topic: str, payload: Payload, qos: int = 0) -> bool:
        """Hand a message to the transport. Returns False if not connected or the transport refused it."""
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            logger.warning("%s Not connected, dropping message for %s", lp, topic)
            return False
        try:
            await self.client.publish(topic, payload, qos=qos)
        except aiomqtt.MqttCodeError as mqtt_code_exc:
            logger.warning("%s [MqttCodeError] -> %s", lp, mqtt_code_exc)
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err)
        else:
            return True
        return False

    async def publish_state(self, payload: Payload, qos: int = 0) -> bool:
        """Publish device state to ``/devices/{device_id}/state``.

        Nothing is queued while offline, whatever the QoS: the call returns False
        and the payload is dropped. QoS 1 only covers delivery once handed over.

        Raises:
            InvalidArgument: If ``qos`` is not 0 or 1

        """
        qos = _validate_qos(qos)
        return await self.publish(self.identity.state_topic, payload, qos)

    async def publish_event(self, payload: Payload, qos: int | str = 0, subfolder: str | None = None) -> bool:
        """Publish telemetry to ``/devices/{device_id}/events[/{subfolder}]``.

        The subfolder may also be given as the second positional argument
        (``publish_event(data, "alerts")``), in which case QoS is 0. As with
        ``publish_state``, nothing is queued while offline and False is returned.

        Raises:
            InvalidArgument: If ``qos`` is not 0 or 1, or ``subfolder`` is not a non-empty string

        """
        if isinstance(qos, str) and subfolder is None:
            subfolder, qos = qos, 0
        qos = _validate_qos(qos)
        if subfolder is not None and (not isinstance(subfolder, str) or not subfolder):
            raise InvalidArgument("subfolder", f"expected a non-empty string, got {subfolder!r}")
        return await self.publish(self.identity.events_topic(subfolder), payload, qos)

    # Credentials

    def replace_private_key(self, new_key: str | bytes, algorithm: TokenAlgorithm | str | None = None) -> None:
        """Use ``new_key`` (and optionally ``algorithm``) from the next token renewal on."""
        self.credentials.replace_private_key(new_key, algorithm)

    def renew_token(self) -> Credential:
        """Sign a new token now; it is presented at the next connection attempt.

        Raises:
            CredentialIssuanceFailed: If signing fails

        """
        return self.credentials.renew()
