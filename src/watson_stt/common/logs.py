"""Centralized logging configuration for watson_stt using structlog."""

import logging
import os
import time
from typing import Any

import structlog
from structlog.dev import BRIGHT, DIM, RESET_ALL, Column, ConsoleRenderer, KeyValueColumnFormatter
from structlog.typing import EventDict, Processor, WrappedLogger

_PROGRAM_START_TIME = time.time()

_QUIET_LIBRARIES = ("websockets", "httpx", "httpcore")


def hex_to_ansi_fg(hex_color: int) -> str:
  """Convert hex color (e.g., 0xad8a89) to ANSI 24-bit foreground escape code."""
  r = (hex_color >> 16) & 0xFF
  g = (hex_color >> 8) & 0xFF
  b = hex_color & 0xFF
  return f"\x1b[38;2;{r};{g};{b}m"


_LEVEL_LABELS = {
  "debug": ("dbug", 0x908CAA),
  "info": ("info", 0x9CCFD8),
  "warning": ("warn", 0xF6C177),
  "error": ("eror", 0xEB6F92),
  "exception": ("exc!", 0xEB6F92),
  "critical": ("crit", 0xEB6F92),
}


def _relative_time_processor(
  _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
  """Stamp each event with the time elapsed since the program started."""
  elapsed = time.time() - _PROGRAM_START_TIME
  minutes, seconds = divmod(elapsed, 60)
  if minutes:
    event_dict["timestamp"] = f"+{int(minutes):02d}:{seconds:06.3f}"
  else:
    event_dict["timestamp"] = f"+{seconds:06.3f}"
  return event_dict


def _compact_level_processor(
  _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
  """Replace the level name with a colored 4-character label."""
  level = event_dict.get("level")
  if level in _LEVEL_LABELS:
    label, color = _LEVEL_LABELS[level]
    event_dict["level"] = f"[{hex_to_ansi_fg(color)}{label}{RESET_ALL}]"
  return event_dict


def _console_renderer() -> ConsoleRenderer:
  plain = dict(key_style=None, reset_style=RESET_ALL, value_repr=str)
  return ConsoleRenderer(
    colors=True,
    columns=[
      Column(
        "",
        KeyValueColumnFormatter(
          key_style=hex_to_ansi_fg(0x6E6A86),
          value_style=hex_to_ansi_fg(0xF6C177),
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      Column("timestamp", KeyValueColumnFormatter(value_style=DIM, **plain)),
      Column("level", KeyValueColumnFormatter(value_style="", **plain)),
      Column(
        "logger",
        KeyValueColumnFormatter(
          value_style=hex_to_ansi_fg(0x7D6B95), prefix="[", postfix="]", **plain
        ),
      ),
      Column("event", KeyValueColumnFormatter(value_style=BRIGHT, width=30, **plain)),
    ],
  )


def setup_logging(
  level: str = "INFO", json_output: bool = False, correlation_id: str | None = None
) -> None:
  """Configure structured logging for the application."""
  shared_processors: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.stdlib.ExtraAdder(),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
  ]

  if correlation_id:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

  if json_output:
    shared_processors.append(structlog.processors.TimeStamper(fmt="iso"))
    log_renderer: Processor = structlog.processors.JSONRenderer()
  else:
    shared_processors += [_compact_level_processor, _relative_time_processor]
    log_renderer = _console_renderer()

  structlog.configure(
    processors=[structlog.stdlib.filter_by_level]
    + shared_processors
    + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
  )

  formatter = structlog.stdlib.ProcessorFormatter(
    foreign_pre_chain=shared_processors,
    processors=[
      structlog.stdlib.ProcessorFormatter.remove_processors_meta,
      log_renderer,
    ],
  )

  handler = logging.StreamHandler()
  handler.setFormatter(formatter)
  root_logger = logging.getLogger()
  root_logger.handlers.clear()
  root_logger.addHandler(handler)
  root_logger.setLevel(level)

  # Library chatter only comes through when it matters
  for liblog in [logging.getLogger(name) for name in _QUIET_LIBRARIES]:
    liblog.handlers.clear()
    liblog.setLevel(logging.WARNING)
    liblog.propagate = True


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
  """Get a structured logger instance."""
  return structlog.get_logger(name, **initial_values)


def setup_logging_from_env() -> None:
  """Setup logging using environment variables."""
  log_level = os.getenv("LOG_LEVEL", "INFO").upper()
  json_output = os.getenv("JSON_LOGS", "false").lower() in ("true", "1", "yes", "on")
  correlation_id = os.getenv("CORRELATION_ID")

  setup_logging(level=log_level, json_output=json_output, correlation_id=correlation_id)
