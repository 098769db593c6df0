from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from esgflow.core.config import get_settings


_CONFIGURED = False


class JsonFormatter(logging.Formatter):
    # Render one JSON object per record so log shippers can index fields.
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


def configure_logging() -> None:
    # Configure the root logger once per process from settings.
    global _CONFIGURED
    if _CONFIGURED:
        return
    settings = get_settings()
    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())
    # httpx logs every request at INFO; keep connector chatter at WARNING.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _CONFIGURED = True
