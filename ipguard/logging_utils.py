from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Optional

from .config import settings

_EXTRA_KEYS = (
    "event",
    "client_key",
    "user_id",
    "reason",
    "failure_count",
    "block_seconds",
    "blocked_until",
    "removed",
    "tracked",
    "method",
    "path",
    "status",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.setLevel(getattr(logging, level or settings.log_level, logging.INFO))
    root.addHandler(handler)
