"""
Logging setup for the CLI.

structlog over stdlib logging, written to stderr so it never mixes with
command output on stdout. Quiet (WARNING) unless asked otherwise.

    SENDLY_LOG_LEVEL   DEBUG/INFO/WARNING/ERROR (default WARNING)
    SENDLY_LOG_FORMAT  console (default) or json
"""

import logging
import os
import sys

import structlog


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    level_name = (level or os.environ.get("SENDLY_LOG_LEVEL") or "WARNING").upper()
    log_level = getattr(logging, level_name, logging.WARNING)
    if json_logs is None:
        json_logs = os.environ.get("SENDLY_LOG_FORMAT", "").lower() == "json"

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("httpcore").setLevel(max(log_level, logging.WARNING))
