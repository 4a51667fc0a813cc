"""Logging abstraction for the session layer.

Emits JSON and/or human-readable records, tagging each with the correlation id
of the connection cycle that produced it and any structured ``extra`` context.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast, override

__all__ = [
    "HumanReadableFormatter",
    "JSONFormatter",
    "SessionLogger",
    "get_logger",
    "set_package_level",
]

# Never log these context keys verbatim; a signed token is a live credential.
_REDACTED_KEYS = frozenset({"token", "password", "private_key"})


def _context_of(record: logging.LogRecord) -> dict[str, object]:
    extra_data = getattr(record, "extra_data", None)
    if not isinstance(extra_data, Mapping) or not extra_data:
        return {}
    context_map = cast("Mapping[str, object]", extra_data)
    return {k: ("<redacted>" if k in _REDACTED_KEYS else v) for k, v in context_map.items()}


class JSONFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per record."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        from cloud_iot_mqtt.correlation import get_correlation_id

        log_data: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        context = _context_of(record)
        if context:
            log_data["context"] = context
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Formatter for console output: ``time level [module:line] [corr] > message | k=v``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        from cloud_iot_mqtt.correlation import get_correlation_id

        correlation_id = get_correlation_id()
        record.correlation_id = f"[{correlation_id[:8]}]" if correlation_id else "[--------]"

        formatted = super().format(record)
        context = _context_of(record)
        if context:
            formatted = f"{formatted} | " + " | ".join(f"{k}={v}" for k, v in context.items())
        return formatted


class SessionLogger:
    """Thin wrapper over a stdlib logger that accepts structured ``extra`` context."""

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stderr",
    ) -> None:
        """Initialize SessionLogger.

        Args:
            name: Logger name (typically module name)
            log_format: Output format - "json", "human", or "both"
            json_file: Path for JSON output (None writes JSON to the human stream when log_format="json")
            human_output: "stdout", "stderr", or file path for human-readable output

        """
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format

        from cloud_iot_mqtt.const import CLOUD_IOT_DEBUG

        self.logger.setLevel(logging.DEBUG if CLOUD_IOT_DEBUG else logging.INFO)

        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)

    def _open_stream(self, output: str | Path) -> logging.Handler:
        if output == "stdout":
            return logging.StreamHandler(sys.stdout)
        if output == "stderr":
            return logging.StreamHandler(sys.stderr)
        try:
            path = Path(output)
            path.parent.mkdir(parents=True, exist_ok=True)
            return logging.FileHandler(path, mode="a")
        except OSError as e:
            print(f"Warning: Failed to open log file {output}: {e}", file=sys.stderr)
            return logging.StreamHandler(sys.stderr)

    def _configure_handlers(self, json_file: str | Path | None, human_output: str | None) -> None:
        level = self.logger.level
        if self.log_format in ("json", "both"):
            target = json_file or (human_output if self.log_format == "json" else None)
            if target:
                json_handler = self._open_stream(target)
                json_handler.setFormatter(JSONFormatter())
                json_handler.setLevel(level)
                self.logger.addHandler(json_handler)

        if self.log_format in ("human", "both"):
            human_handler = self._open_stream(human_output or "stderr")
            human_handler.setFormatter(HumanReadableFormatter())
            human_handler.setLevel(level)
            self.logger.addHandler(human_handler)

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        extra_payload = {"extra_data": dict(extra)} if extra else None
        self.logger.log(level, msg, *args, extra=extra_payload)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        extra_payload = {"extra_data": dict(extra)} if extra else None
        self.logger.exception(msg, *args, extra=extra_payload)

    def set_level(self, level: int) -> None:
        """Set the level on the logger and all of its handlers."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> SessionLogger:
    """Get a SessionLogger configured from the CLOUD_IOT_LOG_* settings unless overridden."""
    from cloud_iot_mqtt.const import (
        CLOUD_IOT_LOG_FORMAT,
        CLOUD_IOT_LOG_HUMAN_OUTPUT,
        CLOUD_IOT_LOG_JSON_FILE,
    )

    return SessionLogger(
        name=name,
        log_format=log_format or CLOUD_IOT_LOG_FORMAT,
        json_file=json_file or CLOUD_IOT_LOG_JSON_FILE,
        human_output=human_output or CLOUD_IOT_LOG_HUMAN_OUTPUT,
    )


def set_package_level(level: int, package: str = "cloud_iot_mqtt") -> int:
    """Set ``level`` on every logger (and handler) created under ``package``.

    Returns:
        Number of loggers updated

    """
    updated = 0
    for name, candidate in list(logging.Logger.manager.loggerDict.items()):
        if not isinstance(candidate, logging.Logger):
            continue
        if name != package and not name.startswith(f"{package}."):
            continue
        candidate.setLevel(level)
        for handler in candidate.handlers:
            handler.setLevel(level)
        updated += 1
    return updated
