"""Logging configuration for taskforge.

structlog is routed through the stdlib logging module so that third-party
loggers (httpx, opentelemetry) share the same handlers. Console output is
human-readable by default; JSON output is available for log shippers.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

import structlog

# Suppress noisy third-party loggers unless we are debugging
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "opentelemetry.exporter.otlp.proto.grpc": logging.ERROR,
}


def configure_logging(
    level: int = logging.INFO,
    json_output: bool = False,
    log_file: Path | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum level for console output
        json_output: Render console events as JSON instead of key=value text
        log_file: Optional file for DEBUG-level logs, rotated by size
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated log files to keep
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to avoid duplicates if reconfigured
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        root_logger.addHandler(file_handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else quiet_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            *([structlog.processors.format_exc_info] if json_output else []),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
