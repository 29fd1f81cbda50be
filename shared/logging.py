"""
logging.py – one stdout logger per engine component
---------------------------------------------------
LOG_LEVEL   DEBUG | INFO | WARNING …           (default INFO)
LOG_FORMAT  json  → one JSON object per line   (default)
            text  → `time level source: message` for a terminal

Structured context travels as `log.info("…", extra={"ctx": {...}})`.
"""

from __future__ import annotations
import json, logging, os, sys
from datetime import datetime, timezone
from typing import Mapping, Any

_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_log_format = os.getenv("LOG_FORMAT", "json").lower()
logging.basicConfig(level=_log_level, handlers=[])


def _ts(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:          # noqa: D401
        msg: dict[str, Any] = {
            "ts":  _ts(record),
            "lvl": record.levelname,
            "src": record.name,
            "msg": record.getMessage(),
        }
        ctx: Mapping[str, Any] | None = getattr(record, "ctx", None)
        if ctx:
            msg["ctx"] = dict(ctx)
        if record.exc_info:
            msg["exc"] = self.formatException(record.exc_info)
        return json.dumps(msg, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:          # noqa: D401
        line = f"{_ts(record)} {record.levelname:<7} {record.name}: {record.getMessage()}"
        ctx = getattr(record, "ctx", None)
        if ctx:
            line += " " + " ".join(f"{k}={v}" for k, v in dict(ctx).items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(TextFormatter() if _log_format == "text" else JsonFormatter())
        logger.addHandler(h)
        logger.setLevel(_log_level)
        logger.propagate = False
    return logger
