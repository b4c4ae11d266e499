from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from mission_dispatch.config import Settings, settings as default_settings

__all__ = ["JsonFormatter", "configure_logging"]

UTC = timezone.utc
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; structured dispatch lines are embedded as-is."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        data: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
        }
        if record.name.startswith("dispatch.") and message.startswith("{"):
            try:
                data["event"] = json.loads(message)
            except ValueError:
                data["message"] = message
        else:
            data["message"] = message
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_logging(settings: Settings | None = None) -> None:
    """Install the root handler once; safe to call again (replaces our handler)."""
    settings = settings or default_settings
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_mission_dispatch", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._mission_dispatch = True  # type: ignore[attr-defined]
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    # SQL echo is governed by DB_ECHO, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
