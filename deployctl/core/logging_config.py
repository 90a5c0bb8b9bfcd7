"""
Structured Logging Configuration.

Console output is colored and prefixed with the rollout a record belongs to;
JSON output carries the same rollout context as a nested object so that log
pipelines can group records per session. State transitions additionally go to
the ``deployments`` logger, which ``setup_logging`` can tee into a JSON-lines
file.

Usage:
    from deployctl.core.logging_config import setup_logging, get_logger, log_deployment_event

    setup_logging(level="INFO", json_format=False)

    log = get_logger(__name__, target="phrases-api", session_id="4f1c...")
    log.info("step applied")

    log_deployment_event(session_id="4f1c...", target="phrases-api", event="MONITORING")

    with log_operation("set_split(phrases-api)") as timer:
        await router.set_split(target, split)
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

DEPLOYMENT_LOGGER = "deployments"

# Attribute set on LogRecords by SessionContextAdapter and log_deployment_event
CONTEXT_ATTR = "context"


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, CONTEXT_ATTR, None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON object per record with rollout context nested under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = _context_of(record)
        if context:
            payload["context"] = context

        if record.levelno >= logging.WARNING:
            payload["source"] = f"{record.pathname}:{record.lineno}"
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level, ``[target#session]`` prefix when known."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = "%H:%M:%S"):
        super().__init__(fmt or "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt)

    @staticmethod
    def rollout_tag(context: Dict[str, Any]) -> str:
        target = context.get("target")
        session_id = context.get("session_id")
        if not target and not session_id:
            return ""
        tag = target or "?"
        if session_id:
            tag += f"#{str(session_id)[:8]}"
        return f"[{tag}] "

    def formatMessage(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        values = dict(record.__dict__)
        values["levelname"] = f"{color}{record.levelname:<8}{self.RESET}"
        values["message"] = self.rollout_tag(_context_of(record)) + record.message
        return self._style._fmt % values


class SessionContextAdapter(logging.LoggerAdapter):
    """Attaches fixed rollout context (target, session id) to every record."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra[CONTEXT_ATTR] = {**self.extra, **extra.get(CONTEXT_ATTR, {})}
        kwargs["extra"] = extra
        return msg, kwargs


def _handler(handler: logging.Handler, formatter: logging.Formatter, level: int):
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    deployment_log_file: Optional[str] = None,
) -> None:
    """
    Install root handlers. Replaces any handlers already on the root logger.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON console output instead of colored text
        log_file: Optional file receiving every record as JSON
        deployment_log_file: Optional JSON-lines file receiving only state transitions
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    console_formatter = JSONFormatter() if json_format else ColoredFormatter()
    root.addHandler(_handler(logging.StreamHandler(sys.stdout), console_formatter, numeric_level))

    if log_file:
        root.addHandler(_handler(logging.FileHandler(log_file), JSONFormatter(), logging.DEBUG))

    if deployment_log_file:
        path = Path(deployment_log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        deployments = logging.getLogger(DEPLOYMENT_LOGGER)
        deployments.setLevel(logging.INFO)
        deployments.addHandler(
            _handler(logging.FileHandler(path, encoding="utf-8"), JSONFormatter(), logging.INFO)
        )


def get_logger(name: str, **context) -> logging.Logger:
    """
    Logger for ``name``; wrapped in a SessionContextAdapter when context is given.

    Example:
        log = get_logger(__name__, session_id=session.session_id, target=session.target)
    """
    logger = logging.getLogger(name)
    if context:
        return SessionContextAdapter(logger, context)
    return logger


def log_deployment_event(
    session_id: str,
    target: str,
    event: str,
    level: int = logging.INFO,
    **fields,
) -> None:
    """Write one state transition to the ``deployments`` logger, dropping None fields."""
    context: Dict[str, Any] = {"session_id": session_id, "target": target, "event": event}
    context.update((k, v) for k, v in fields.items() if v is not None)
    logging.getLogger(DEPLOYMENT_LOGGER).log(
        level, f"{target} -> {event}", extra={CONTEXT_ATTR: context}
    )


@dataclass
class OperationTimer:
    """Outcome and wall time of one external call."""

    name: str
    started: float
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.name, "elapsed_ms": round(self.elapsed_ms, 3), "ok": self.ok}


@contextmanager
def log_operation(
    name: str,
    logger: Optional[logging.Logger] = None,
    level: int = logging.DEBUG,
) -> Iterator[OperationTimer]:
    """
    Time the enclosed block and log the outcome. Exceptions propagate.

    Failures are logged at WARNING regardless of ``level``.
    """
    log = logger or logging.getLogger(__name__)
    timer = OperationTimer(name=name, started=time.monotonic())
    try:
        yield timer
    except Exception as e:
        timer.error = f"{type(e).__name__}: {e}"
        raise
    finally:
        timer.elapsed_ms = (time.monotonic() - timer.started) * 1000
        if timer.ok:
            log.log(
                level,
                f"{name} took {timer.elapsed_ms:.1f}ms",
                extra={CONTEXT_ATTR: timer.to_dict()},
            )
        else:
            log.warning(
                f"{name} failed after {timer.elapsed_ms:.1f}ms ({timer.error})",
                extra={CONTEXT_ATTR: timer.to_dict()},
            )
