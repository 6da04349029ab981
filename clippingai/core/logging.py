import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from .config import get_settings

SERVICE_NAME = "clippingai_pipeline"

# Keys passed through `extra=` by the pipeline stages.
STRUCTURED_FIELDS = ("run_id", "company", "stage", "candidate", "query")

# Client libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "openai")

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying the run/stage context of the record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": getattr(record, "service", SERVICE_NAME),
        }
        payload.update(
            {name: getattr(record, name) for name in STRUCTURED_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: int | str | None = None) -> None:
    """
    Install the JSON handler on the root logger.

    The level defaults to LOG_LEVEL from settings. Only the first call has any
    effect.
    """
    global _configured
    if _configured:
        return

    if level is None:
        level = get_settings().LOG_LEVEL

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
