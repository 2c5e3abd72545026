"""Logging setup shared by the API process and background jobs."""

from __future__ import annotations

import json
import logging
from logging.config import dictConfig
from traceback import format_exception

from docrepo.config import settings

_CONFIGURED = False


class JsonFormatter(logging.Formatter):
    """Structured JSON formatter for production log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id is not None:
            payload["request_id"] = request_id
        if record.exc_info:
            exc_type = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["error"] = {
                "type": exc_type,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stack": "".join(format_exception(*record.exc_info))[:4000],
            }
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    level = (level or settings.log_level).upper()
    formatter_name = "json" if (fmt or settings.log_format).lower() == "json" else "plain"
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "plain": {
                    "format": "%(asctime)s %(levelname)-5s %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                },
                "json": {
                    "()": JsonFormatter,
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                },
            },
            "handlers": {
                "stream": {
                    "class": "logging.StreamHandler",
                    "level": level,
                    "formatter": formatter_name,
                }
            },
            "root": {"level": level, "handlers": ["stream"]},
            "loggers": {
                "uvicorn": {"level": "INFO", "handlers": [], "propagate": True},
                "uvicorn.access": {"level": "INFO", "handlers": [], "propagate": True},
                "botocore": {"level": "WARNING"},
            },
        }
    )
    _CONFIGURED = True
