"""Logging setup helpers for pscale_agent.

Every record carries the id of the run it was logged from (or "-"), so the
interleaved output of concurrent requests can be told apart.
"""

from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone

from .config import LoggingConfig

_LIBRARY_LOGGER_PREFIXES = ("httpcore", "httpx", "uvicorn")
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(run_id)s]: %(message)s"

_current_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("pscale_run_id", default=None)


def bind_run_id(run_id: str | None) -> contextvars.Token:
    """Tag records logged from the current task with `run_id`."""
    return _current_run_id.set(run_id)


def reset_run_id(token: contextvars.Token) -> None:
    _current_run_id.reset(token)


class RunIdFilter(logging.Filter):
    """Attach the bound run id as `record.run_id`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _current_run_id.get() or "-"
        return True


class JsonLogFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "run": getattr(record, "run_id", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _align_library_loggers(level: int) -> None:
    # httpx logs every request at INFO; its tree follows the configured level.
    known = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in _LIBRARY_LOGGER_PREFIXES:
        for name in (prefix, *(n for n in known if n.startswith(f"{prefix}."))):
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure the root logger from runtime configuration."""
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.addFilter(RunIdFilter())
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    _align_library_loggers(level)
