"""Command line device agent: keeps one device session online until signalled."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from functools import partial
from pathlib import Path
from typing import Protocol, cast, runtime_checkable

import dotenv
import uvloop

from cloud_iot_mqtt.config import SessionOptions
from cloud_iot_mqtt.const import CLOUD_IOT_DEBUG, CLOUD_IOT_VERSION, SESSION_START_TASK_NAME
from cloud_iot_mqtt.correlation import correlation_context, ensure_correlation_id
from cloud_iot_mqtt.exceptions import CloudIotError
from cloud_iot_mqtt.logging_abstraction import get_logger, set_package_level
from cloud_iot_mqtt.mqtt import DeviceSession
from cloud_iot_mqtt.structs import SessionEvent

logger = get_logger(__name__)

# paho is chatty at INFO about keepalives
logging.getLogger("mqtt").setLevel(logging.ERROR)


@runtime_checkable
class _CLIArgs(Protocol):
    debug: bool
    env: Path | None
    state: str | None


class DeviceAgent:
    """Runs a DeviceSession, logs everything it receives, and stops on SIGINT/SIGTERM."""

    lp: str = "DeviceAgent:"

    def __init__(self, options: SessionOptions, state: str | None = None) -> None:
        self.state: str | None = state
        self._state_sent: bool = False
        self._stop_tasks: set[asyncio.Task[None]] = set()
        self.session: DeviceSession = DeviceSession(
            options,
            on_configuration=self.on_configuration,
            on_command=self.on_command,
        )
        self.session.set_event_handler(SessionEvent.CONNECT, self.on_connect)
        self.session.set_event_handler(SessionEvent.DISCONNECT, self.on_disconnect)
        self.session.set_event_handler(SessionEvent.TOKEN_RENEWAL, self.on_token_renewal)
        self.session.set_event_handler(SessionEvent.ERROR, self.on_error)

    def on_configuration(self, payload: bytes) -> None:
        logger.info("%s Configuration received", self.lp, extra={"bytes": len(payload), "payload": _preview(payload)})

    def on_command(self, payload: bytes, subfolder: str | None) -> None:
        logger.info(
            "%s Command received",
            self.lp,
            extra={"subfolder": subfolder, "bytes": len(payload), "payload": _preview(payload)},
        )

    async def on_connect(self) -> None:
        logger.info("%s Session connected", self.lp)
        if self.state is not None and not self._state_sent:
            self._state_sent = await self.session.publish_state(self.state, qos=1)

    def on_disconnect(self, token_expired: bool) -> None:
        logger.info("%s Session lost", self.lp, extra={"token_expired": token_expired})

    def on_token_renewal(self, expires_at: int) -> None:
        logger.info("%s Token renewed", self.lp, extra={"expires_at": expires_at})

    def on_error(self, exc: Exception) -> None:
        logger.warning("%s Transport error: %s", self.lp, exc)

    def signal_handler(self, signum: int) -> None:
        """Schedule a graceful stop for an intercepted POSIX signal."""
        logger.info("%s Intercepted signal: %s (%s)", self.lp, signal.Signals(signum).name, signum)
        task = asyncio.get_running_loop().create_task(self.session.stop())
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)

    async def run(self) -> None:
        _ = ensure_correlation_id()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, partial(self.signal_handler, signum))
        logger.debug("%s Signal handlers configured for SIGINT & SIGTERM", self.lp)

        self.session.start_task = asyncio.create_task(self.session.start(), name=SESSION_START_TASK_NAME)
        try:
            await self.session.start_task
        except asyncio.CancelledError:
            logger.info("%s Session loop cancelled", self.lp)


def _preview(payload: bytes, limit: int = 120) -> str:
    text = payload.decode(errors="replace")
    return text if len(text) <= limit else f"{text[:limit]}..."


def _load_env_file(env_file: Path) -> None:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return
    if dotenv.load_dotenv(env_path, override=True):
        logger.info(" Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})


def parse_cli(argv: list[str] | None = None) -> _CLIArgs:
    """Parse CLI arguments for the device agent."""
    parser = argparse.ArgumentParser(
        prog="cloud-iot-mqtt",
        description="Keep a device connected to the MQTT bridge, renewing its JWT as needed",
    )
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument(
        "--state",
        default=None,
        help="Publish this text as device state after the first successful connection",
    )
    args = cast("_CLIArgs", cast("object", parser.parse_args(argv)))

    if args.debug:
        _ = set_package_level(logging.DEBUG)
        logger.info("Debug mode enabled via CLI argument")
    if args.env:
        _load_env_file(args.env)
    return args


def main(argv: list[str] | None = None) -> int:
    """Run the device agent entry point."""
    with correlation_context():
        logger.info("Starting device agent", extra={"version": CLOUD_IOT_VERSION})
        args = parse_cli(argv)

        if CLOUD_IOT_DEBUG:
            logger.info("Debug logging enabled via configuration")
            _ = set_package_level(logging.DEBUG)

        try:
            agent = DeviceAgent(SessionOptions.from_env(), state=args.state)
        except CloudIotError as e:
            logger.error("Cannot start device agent: %s", e)
            return 2

        try:
            with asyncio.Runner(loop_factory=uvloop.new_event_loop) as runner:
                runner.run(agent.run())
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception(" Fatal error in main loop", extra={"error": str(e)})
            return 1
        else:
            logger.info(" Device agent stopped gracefully")
        return 0
