import json
import logging
import sys
from datetime import datetime, timezone

from fleet.config import settings

STRUCTURED_FIELDS = (
    "event_type", "plan_id", "instance_id", "group", "from_state", "to_state",
    "weight", "weights", "reason", "desired_count", "previous_count", "action",
    "attempt", "status", "average_load",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "event": record.getMessage(),
            "module": record.module,
        }
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    # Suppress noisy uvicorn access logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").propagate = False
