# spotbot/logger.py
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional


class JsonLineFormatter(logging.Formatter):
    """Renders a record as one `{timestamp, level, message, context}` JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "context": getattr(record, "context", {}),
        }
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configures structured logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s.%(msecs)03dZ [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout
    )
    if log_file:
        root = logging.getLogger()
        if not any(isinstance(h.formatter, JsonLineFormatter) for h in root.handlers):
            handler = logging.FileHandler(log_file)
            handler.setFormatter(JsonLineFormatter())
            root.addHandler(handler)
