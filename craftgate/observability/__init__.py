"""
CraftGate Observability

Structured logging setup.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import List, Optional

from ..core.config import Config

# Extra attributes copied into JSON log lines when present on a record.
EXTRA_FIELDS = ("record_id", "command", "module_name", "hook_point", "key_id")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter()
    return logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Install CraftGate's log handlers on the root logger.

    Console output goes to stderr so that command results printed on
    stdout stay machine readable. A log file is reopened when an external
    rotator moves it.
    """
    formatter = _formatter(json_format)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.handlers.WatchedFileHandler(log_file, encoding="utf-8"))

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


def setup_logging_from_config(config: Config, log_file: Optional[str] = None) -> None:
    """Configure logging from the operational settings of a Config."""
    setup_logging(level=config.log_level, json_format=config.json_logs, log_file=log_file)


__all__ = ["JSONFormatter", "setup_logging", "setup_logging_from_config"]
