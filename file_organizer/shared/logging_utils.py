"""
Logging configuration.

Engine modules log through ``logging.getLogger(__name__)`` and attach
structured fields with ``extra={"context": {...}}``. The CLI picks plain text
or JSON records at startup.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from rich.console import Console
from rich.logging import RichHandler


class StructuredFormatter(logging.Formatter):
    """Format log records as ``{timestamp, level, message, context}`` JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "context": getattr(record, "context", {}) or {},
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    verbose: bool = False, quiet: bool = False, json_format: bool = False
) -> None:
    """
    Configure logging for the application.

    Args:
        verbose: If True, set logging level to DEBUG
        quiet: If True, set logging level to WARNING
        json_format: If True, emit structured JSON records instead of rich text
    """
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handler: logging.Handler
    if json_format:
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
    else:
        handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=verbose
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="%H:%M:%S"))

    logging.basicConfig(level=level, handlers=[handler], force=True)
