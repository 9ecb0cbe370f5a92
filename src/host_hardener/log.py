"""structlog setup shared by the CLI and tests."""

import logging
import sys
from pathlib import Path
from typing import IO, Optional

import structlog

from host_hardener.exceptions import ConfigurationError


def configure_logging(
    level: str = "INFO",
    file: Optional[Path] = None,
    json_format: bool = False,
) -> None:
    """Configure structlog for this process.

    Events go to stderr so the summary report on stdout stays clean, or to
    ``file`` when one is given.

    Args:
        level: Minimum level name, e.g. ``"INFO"``
        file: Optional log file, appended to
        json_format: Render one JSON object per line instead of console text

    Raises:
        ConfigurationError: If the level is unknown or the file cannot be opened
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ConfigurationError(f"Unknown log level: {level}")

    stream: IO[str] = sys.stderr
    if file is not None:
        try:
            stream = open(file, "a", encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot open log file {file}: {e}") from e

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_format or file is not None:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=stream.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
