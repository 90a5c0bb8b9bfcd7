"""
Core module for shared infrastructure: errors, logging and async helpers.
"""

from .async_utils import (
    AsyncTaskManager,
    call_with_deadline,
    retry_call,
    wait_or_cancelled,
)

from .exceptions import (
    CallTimeoutError,
    CapacityError,
    ConcurrentDeploymentError,
    ConfigError,
    DeployControllerError,
    ErrorCategory,
    ErrorSeverity,
    MetricUnavailable,
    RollbackFailedError,
    RouterError,
    SessionNotFoundError,
    alert_handler,
    error_tracker,
    log_exception,
    page,
)

from .logging_config import (
    get_logger,
    log_deployment_event,
    log_operation,
    setup_logging,
)

__all__ = [
    # Async
    "AsyncTaskManager",
    "call_with_deadline",
    "retry_call",
    "wait_or_cancelled",
    # Errors
    "CallTimeoutError",
    "CapacityError",
    "ConcurrentDeploymentError",
    "ConfigError",
    "DeployControllerError",
    "ErrorCategory",
    "ErrorSeverity",
    "MetricUnavailable",
    "RollbackFailedError",
    "RouterError",
    "SessionNotFoundError",
    "alert_handler",
    "error_tracker",
    "log_exception",
    "page",
    # Logging
    "get_logger",
    "log_deployment_event",
    "log_operation",
    "setup_logging",
]
