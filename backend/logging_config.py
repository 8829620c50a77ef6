# backend/logging_config.py

import logging
import sys
import json

# Extras that relay code attaches via logger.x(..., extra={...})
CONTEXT_FIELDS = ("request_id", "session_id", "character_id")


# Custom formatter that outputs logs as structured JSON
class JsonFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


# Configure the root logger with the JSON formatter (stdout, picked up by the platform)
def setup_logging(level=None):
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level or logging.INFO)

    # Clear any existing handlers to avoid duplicate logs
    root.handlers.clear()
    root.addHandler(handler)
