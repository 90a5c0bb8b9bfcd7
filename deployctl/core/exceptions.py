"""
Exception handling utilities for the deployment controller.

Provides:
- Custom exception hierarchy for rollout operations
- Error classification and tracking
- Alert dispatch for paging-worthy failures
"""

from __future__ import annotations

import logging
import time
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorSeverity(Enum):
    """How urgently an error needs attention."""

    LOW = "low"  # Request rejected, nothing changed
    MEDIUM = "medium"  # Degraded input, rollout continues
    HIGH = "high"  # Requires attention, a rollout was affected
    CRITICAL = "critical"  # Safety guarantee lost, page someone


class ErrorCategory(Enum):
    """Which part of the controller an error came from."""

    CONFIGURATION = "configuration"  # Invalid strategy/alarm/autoscaling parameters
    CONCURRENCY = "concurrency"  # Competing rollouts on one target
    METRICS = "metrics"  # Metric source failures
    ROUTING = "routing"  # Traffic router failures
    CAPACITY = "capacity"  # Warm pool executor failures
    STATE = "state"  # Unknown sessions, invalid transitions
    SYSTEM = "system"  # Deadlines, OS and network errors
    UNKNOWN = "unknown"


# Controller errors


class DeployControllerError(Exception):
    """Base exception for all deployment controller errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.timestamp = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ConfigError(DeployControllerError):
    """Invalid strategy, threshold or capacity parameters."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.LOW),
            category=ErrorCategory.CONFIGURATION,
            **kwargs,
        )


class ConcurrentDeploymentError(DeployControllerError):
    """A rollout is already active on the target."""

    def __init__(self, message: str, target: str = "", active_session: str = "", **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.LOW),
            category=ErrorCategory.CONCURRENCY,
            **kwargs,
        )
        self.details["target"] = target
        self.details["active_session"] = active_session


class SessionNotFoundError(DeployControllerError):
    """No active or archived session with the given id."""

    def __init__(self, message: str, session_id: str = "", **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.LOW),
            category=ErrorCategory.STATE,
            **kwargs,
        )
        self.details["session_id"] = session_id


class MetricUnavailable(DeployControllerError):
    """Metric source could not supply counts for a window."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.MEDIUM),
            category=ErrorCategory.METRICS,
            **kwargs,
        )


class RouterError(DeployControllerError):
    """Traffic router rejected or failed a split change."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.HIGH),
            category=ErrorCategory.ROUTING,
            **kwargs,
        )


class CapacityError(DeployControllerError):
    """Capacity executor failed to apply a warm instance count."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.MEDIUM),
            category=ErrorCategory.CAPACITY,
            **kwargs,
        )


class RollbackFailedError(RouterError):
    """Automatic rollback could not restore 100% stable traffic."""

    def __init__(self, message: str, target: str = "", session_id: str = "", **kwargs):
        super().__init__(message, severity=ErrorSeverity.CRITICAL, **kwargs)
        self.details["target"] = target
        self.details["session_id"] = session_id
        self.details["action"] = "manually route 100% of traffic to the stable version"


class CallTimeoutError(DeployControllerError):
    """An external call exceeded its deadline."""

    def __init__(self, message: str, timeout: float = 0, **kwargs):
        super().__init__(
            message,
            severity=kwargs.pop("severity", ErrorSeverity.MEDIUM),
            category=ErrorCategory.SYSTEM,
            **kwargs,
        )
        self.details["timeout"] = timeout


# Classification of exceptions raised by collaborator code. Order matters:
# TimeoutError and ConnectionError are both OSError subclasses.
_BUILTIN_CLASSIFICATION: Tuple[Tuple[Type[BaseException], ErrorCategory, ErrorSeverity], ...] = (
    (TimeoutError, ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM),
    (ConnectionError, ErrorCategory.SYSTEM, ErrorSeverity.HIGH),
    (OSError, ErrorCategory.SYSTEM, ErrorSeverity.HIGH),
    (MemoryError, ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL),
    (ValueError, ErrorCategory.CONFIGURATION, ErrorSeverity.LOW),
    (TypeError, ErrorCategory.CONFIGURATION, ErrorSeverity.LOW),
)

_SEVERITY_RANK = {severity: rank for rank, severity in enumerate(ErrorSeverity)}


def classify_exception(exc: BaseException) -> Tuple[ErrorCategory, ErrorSeverity]:
    """Category and severity of any exception; controller errors carry their own."""
    if isinstance(exc, DeployControllerError):
        return exc.category, exc.severity

    for exc_type, category, severity in _BUILTIN_CLASSIFICATION:
        if isinstance(exc, exc_type):
            return category, severity
    return ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM


@dataclass
class ErrorRecord:
    """A classified error together with where it happened."""

    exception: BaseException
    category: ErrorCategory
    severity: ErrorSeverity
    context: str
    timestamp: datetime = field(default_factory=_utcnow)
    traceback_str: Optional[str] = None

    @property
    def key(self) -> str:
        """Counter and cooldown key: exception type plus context."""
        return f"{type(self.exception).__name__}:{self.context}"

    @property
    def target(self) -> Optional[str]:
        details = getattr(self.exception, "details", None) or {}
        return details.get("target") or None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "error_type": type(self.exception).__name__,
            "message": str(self.exception),
            "category": self.category.value,
            "severity": self.severity.value,
            "context": self.context,
            "target": self.target,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.traceback_str:
            data["traceback"] = self.traceback_str
        return data


class ErrorTracker:
    """Bounded history of classified errors plus a counter per error key."""

    def __init__(self, max_history: int = 1000):
        self._history: Deque[ErrorRecord] = deque(maxlen=max_history)
        self._counts: Counter = Counter()

    @property
    def max_history(self) -> int:
        return self._history.maxlen or 0

    def record(
        self,
        exc: BaseException,
        context: str = "",
        include_traceback: bool = True,
    ) -> ErrorRecord:
        category, severity = classify_exception(exc)
        tb = None
        if include_traceback and exc.__traceback__ is not None:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        record = ErrorRecord(exc, category, severity, context, traceback_str=tb)
        self._history.append(record)
        self._counts[record.key] += 1
        return record

    def records(self) -> List[ErrorRecord]:
        return list(self._history)

    def get_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent records as dicts, oldest first."""
        return [r.to_dict() for r in self.records()[-limit:]]

    def get_counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def get_by_severity(self, severity: ErrorSeverity) -> List[ErrorRecord]:
        return [r for r in self._history if r.severity is severity]

    def clear(self) -> None:
        self._history.clear()
        self._counts.clear()


error_tracker = ErrorTracker()


class ErrorAlertHandler:
    """
    Forwards serious errors to registered callbacks (pager, chat webhook).

    Records below the severity threshold are dropped, and repeats of the same
    error key within ``cooldown`` seconds are suppressed. A forced alert skips
    both checks.
    """

    def __init__(
        self,
        threshold: ErrorSeverity = ErrorSeverity.HIGH,
        cooldown: float = 300.0,
    ):
        self.threshold = threshold
        self.cooldown = cooldown
        self._callbacks: List[Callable[[ErrorRecord], None]] = []
        self._last_alerted: Dict[str, float] = {}

    def set_severity_threshold(self, severity: ErrorSeverity) -> None:
        self.threshold = severity

    def set_cooldown(self, seconds: float) -> None:
        self.cooldown = seconds

    def register_callback(self, callback: Callable[[ErrorRecord], None]) -> None:
        self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ErrorRecord], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def should_alert(self, record: ErrorRecord, force: bool = False) -> bool:
        if force:
            return True
        if _SEVERITY_RANK[record.severity] < _SEVERITY_RANK[self.threshold]:
            return False

        now = time.monotonic()
        last = self._last_alerted.get(record.key)
        if last is not None and now - last < self.cooldown:
            return False
        self._last_alerted[record.key] = now
        return True

    def alert(self, record: ErrorRecord, force: bool = False) -> bool:
        """Dispatch to every callback. Returns False when the alert was suppressed."""
        if not self.should_alert(record, force=force):
            return False

        for callback in list(self._callbacks):
            try:
                callback(record)
            except Exception as e:
                name = getattr(callback, "__qualname__", repr(callback))
                logger.warning(f"Alert callback {name} failed for {record.key}: {e}")
        return True


alert_handler = ErrorAlertHandler()


def log_exception(
    exc: BaseException,
    context: str = "",
    log_level: int = logging.ERROR,
    include_traceback: bool = False,
) -> ErrorRecord:
    """
    Log, track and, when severe enough, alert on an exception.

    Args:
        exc: The exception
        context: Where it happened, e.g. ``"session 4f1c... set_split"``
        log_level: Level for the log line
        include_traceback: Attach the traceback to the log line and the record
    """
    record = error_tracker.record(exc, context, include_traceback)
    logger.log(
        log_level,
        f"{context}: {type(exc).__name__}: {exc} "
        f"({record.category.value}/{record.severity.value})",
        exc_info=exc if include_traceback else None,
    )
    alert_handler.alert(record)
    return record


def page(exc: BaseException, context: str) -> ErrorRecord:
    """
    Track an error that needs a human and alert unconditionally.

    Used when the controller could not restore a safe traffic split.
    """
    record = error_tracker.record(exc, context, include_traceback=False)
    logger.critical(f"PAGE {context}: {type(exc).__name__}: {exc}")
    alert_handler.alert(record, force=True)
    return record


def get_error_summary() -> Dict[str, Any]:
    """Totals of tracked errors by severity, category and key."""
    records = error_tracker.records()
    return {
        "total_errors": len(records),
        "by_severity": dict(Counter(r.severity.value for r in records)),
        "by_category": dict(Counter(r.category.value for r in records)),
        "counts": error_tracker.get_counts(),
    }
