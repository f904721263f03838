from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys

from skillgate.core.config import get_settings


_CONFIGURED = False

ALERT_LOGGER_NAME = "skillgate.alerts"


class JsonFormatter(logging.Formatter):
    # Emit one JSON object per line so log shippers can index fields.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(*, force: bool = False) -> None:
    # Configure the root logger once per process unless explicitly forced.
    global _CONFIGURED
    if _CONFIGURED and not force:
        return
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    handler.set_name("skillgate")
    root = logging.getLogger()
    for existing in list(root.handlers):
        # Replace only our own handler so test/log-capture handlers stay attached.
        if existing.get_name() == "skillgate":
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    _CONFIGURED = True
