from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TextIO


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


@dataclass
class JsonLogConfig:
    service_name: str = "fleetlog"


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Structured values passed as ``extra={"fields": {...}}`` are kept under
    "fields".
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def parse_log_level(raw: str | None, *, default: int = logging.INFO) -> int:
    if raw is None or not raw.strip():
        return default
    value = raw.strip().upper()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value)
    if not isinstance(level, int):
        raise ValueError(f"unknown log level {raw!r}")
    return level


def configure_logging(
    *,
    level: int,
    log_format: str,
    service_name: str = "fleetlog",
    stream: TextIO | None = None,
) -> logging.Handler:
    """Configure process logging.

    - log_format="json": structured JSON lines
    - log_format="text": standard human-readable

    Logs go to stderr by default so stdout stays free for piped records.
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler(stream)
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(service_name=service_name)))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)
    return handler
