"""
Logging setup for block store processes.

The store itself only logs through module loggers. A process that embeds it
calls setup_logging() once at startup (again after a config reload) to get
one formatted handler on the root logger.

Invariants:
    - setup_logging() owns exactly one root handler; handlers added by the
      host application are left alone
    - Driver libraries are kept at WARNING to keep per-query noise out of the logs
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import json_log_formatter

from .config import ObservabilityConfig

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_NOISY_LOGGERS = ("psycopg", "psycopg.pool")

_installed_handler: Optional[logging.Handler] = None


class BlockStoreJSONFormatter(json_log_formatter.JSONFormatter):
    """JSON formatter that also records level and logger name.

    Fields passed via ``extra=`` (height, from_height, backend, ...) become
    top-level keys of the JSON object.
    """

    def json_record(self, message: str, extra: Dict[str, Any], record: logging.LogRecord) -> Dict[str, Any]:
        payload = super().json_record(message, extra, record)
        payload["level"] = record.levelname
        payload["logger"] = record.name
        return payload


def setup_logging(config: ObservabilityConfig) -> logging.Handler:
    """Install the block store handler on the root logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        config: Logging settings

    Returns:
        The installed handler
    """
    global _installed_handler

    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = BlockStoreJSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    if _installed_handler is not None:
        root_logger.removeHandler(_installed_handler)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    _installed_handler = handler

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
