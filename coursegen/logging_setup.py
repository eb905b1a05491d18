from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

# Context keys copied from `extra=` onto every JSON line when present.
CONTEXT_KEYS = (
    "role",
    "service",
    "run_id",
    "kind",
    "item_id",
    "deliveries",
    "course_id",
    "stage",
    "unit_id",
    "attempt",
    "model_tier",
    "verdict",
    "error_code",
    "from_state",
    "to_state",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(*, level: int | str = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
