"""Logging setup shared by the HTTP layer and the subtitle pipeline.

Adds optional structured JSON logging, rotating log files and a per-request
correlation id.
"""

from __future__ import annotations

import contextvars
import datetime
import json
import logging
import logging.handlers
import sys
from typing import List, Optional

# Per-request context for correlation
REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
_DATE_FORMAT = "%H:%M:%S"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload = {
            "ts": datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = REQUEST_ID.get("")
        if rid:
            payload["rid"] = rid
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    """Prefix text log lines with the current request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        rid = REQUEST_ID.get("")
        if rid and not getattr(record, "_rid_tagged", False):
            record.msg = f"[rid={rid}] {record.getMessage()}"
            record.args = ()
            record._rid_tagged = True
        return True


def _build_handlers(json_logs: bool, log_file: Optional[str]) -> List[logging.Handler]:
    formatter: logging.Formatter
    if json_logs:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    handlers: List[logging.Handler] = [stream]

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            mode="a",
            encoding="utf-8",
            maxBytes=1_000_000,
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not json_logs:
        for handler in handlers:
            handler.addFilter(RequestIdFilter())
    return handlers


def setup_logging(level: str = "INFO", json_logs: bool = False, log_file: Optional[str] = None) -> None:
    logging.basicConfig(level=level.upper(), handlers=_build_handlers(json_logs, log_file), force=True)
    logging.getLogger("remote_subs").setLevel(level.upper())
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
