from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any


_RESERVED_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# Never emitted, even if a caller passes them through `extra=`.
_REDACTED_FIELDS = {
    "password",
    "code",
    "token",
    "session_token",
    "refresh_token",
    "totp_secret",
}

FINGERPRINT_LOG_PREFIX = 16


def short_fingerprint(fingerprint: str | None) -> str | None:
    if not fingerprint:
        return None
    if len(fingerprint) <= FINGERPRINT_LOG_PREFIX:
        return fingerprint
    return f"{fingerprint[:FINGERPRINT_LOG_PREFIX]}..."


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS or key.startswith("_"):
                continue
            if key in _REDACTED_FIELDS:
                payload[key] = "[redacted]"
                continue
            if key == "fingerprint" and isinstance(value, str):
                payload[key] = short_fingerprint(value)
                continue
            payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=True)


def setup_json_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
