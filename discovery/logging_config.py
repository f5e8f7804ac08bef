"""structlog setup shared by the engine and the applications embedding it."""

import logging
import os
import sys
from typing import Optional

import structlog

LOG_FORMAT_ENV = "DISCOVERY_LOG_FORMAT"


def configure_logging(level: str = "INFO", json_output: Optional[bool] = None) -> None:
    """Route engine logs through the stdlib root logger.

    Without an explicit `json_output`, logs are rendered as JSON unless
    stderr is a terminal or DISCOVERY_LOG_FORMAT says otherwise.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    if json_output is None:
        json_output = _is_json_mode()
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _is_json_mode() -> bool:
    match os.environ.get(LOG_FORMAT_ENV, "").lower():
        case "json":
            return True
        case "console":
            return False
        case _:
            return not sys.stderr.isatty()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
