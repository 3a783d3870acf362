from __future__ import annotations

from dataclasses import dataclass
import logging
import sys
from typing import TextIO

from opentelemetry import trace

from bkagent.core.config import Settings

NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")

ROOT_LOGGER_NAME = "bkagent"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NO_COLOR = "0"
_LEVEL_COLORS: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("1;30", "1;30"),
    NOTICE: ("1;36", _NO_COLOR),
    logging.INFO: ("1;32", _NO_COLOR),
    logging.WARNING: ("33", _NO_COLOR),
    logging.ERROR: ("31", _NO_COLOR),
    logging.CRITICAL: ("31", "31"),
}


@dataclass(frozen=True, slots=True)
class LogConfig:
    level: int = logging.DEBUG
    colors: bool = True
    stream: TextIO | None = None
    trace_correlation: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, *, stream: TextIO | None = None) -> LogConfig:
        level = logging.getLevelName(settings.log_level.upper())
        if not isinstance(level, int):
            raise ValueError(f"unknown log level: {settings.log_level!r}")
        return cls(
            level=level,
            colors=settings.log_colors,
            stream=stream,
            trace_correlation=settings.otel_enabled and settings.otel_log_correlation,
        )


class AgentFormatter(logging.Formatter):
    """Renders ``2006-01-02 15:04:05 LEVEL  message`` lines, optionally colored per level."""

    def __init__(self, *, colors: bool = False, trace_correlation: bool = False) -> None:
        super().__init__(datefmt=DATE_FORMAT)
        self.colors = colors
        self.trace_correlation = trace_correlation

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if self.trace_correlation:
            message += _trace_suffix()

        timestamp = self.formatTime(record, self.datefmt)
        level = f"{record.levelname:<6}"
        if not self.colors:
            return f"{timestamp} {level} {message}"

        prefix_color, message_color = _LEVEL_COLORS.get(record.levelno, ("1;32", _NO_COLOR))
        return f"\x1b[{prefix_color}m{timestamp} {level}\x1b[0m \x1b[{message_color}m{message}\x1b[0m"


def colors_supported(stream: TextIO) -> bool:
    if sys.platform == "win32":
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def build_logger(config: LogConfig, name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    stream = config.stream if config.stream is not None else sys.stderr
    # StreamHandler serializes emit() under its own lock.
    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        AgentFormatter(
            colors=config.colors and colors_supported(stream),
            trace_correlation=config.trace_correlation,
        )
    )

    logger = logging.getLogger(name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(config.level)
    logger.propagate = False
    return logger


def notice(logger: logging.Logger, message: str, *args: object) -> None:
    logger.log(NOTICE, message, *args)


def _trace_suffix() -> str:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return ""
    return f" trace_id={format(context.trace_id, '032x')} span_id={format(context.span_id, '016x')}"
