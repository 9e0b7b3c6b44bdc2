"""
Enhanced logging infrastructure for the block monitor.

This module provides context-rich error logging on top of loguru, complementing
the Prometheus metrics by carrying correlation IDs, system state and business
context into every structured log record.
"""

import os
import sys
import time
import uuid
import traceback
import contextvars
from typing import Dict, Any, Optional
from loguru import logger
import psutil


# Context-local storage for correlation IDs, follows asyncio tasks
_correlation_context: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return f"req_{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from the active context."""
    return _correlation_context.get()


def set_correlation_id(correlation_id: Optional[str]):
    """Set the correlation ID in the active context."""
    _correlation_context.set(correlation_id)


def get_system_state() -> Dict[str, Any]:
    """Get current system state for error context."""
    try:
        process = psutil.Process()
        return {
            "memory_usage_mb": round(process.memory_info().rss / 1024 / 1024, 2),
            "cpu_percent": process.cpu_percent(),
            "threads": process.num_threads(),
            "timestamp": time.time()
        }
    except Exception:
        return {"error": "unable_to_get_system_state"}


def setup_enhanced_logger(service_name: str, level: str = "INFO"):
    """
    Setup enhanced logger with correlation ID support and structured context.

    Args:
        service_name: Name of the service (e.g., 'substrate-moonbeam-block-monitor')
        level: Minimum level for both sinks
    """
    def patch_record(record):
        record["extra"]["service"] = service_name
        record["extra"]["correlation_id"] = get_correlation_id() or "no_correlation"
        return True

    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    logs_dir = os.path.join(project_root, "logs")
    os.makedirs(logs_dir, exist_ok=True)

    logger.remove()

    # File logger with JSON serialization for Loki ingestion
    logger.add(
        os.path.join(logs_dir, f"{service_name}.log"),
        rotation="500 MB",
        level=level,
        filter=patch_record,
        serialize=True,
    )

    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | <cyan>{extra[service]}</cyan> | <blue>{extra[correlation_id]}</blue> | <white>{message}</white>",
        level=level,
        filter=patch_record,
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )


class ErrorContextManager:
    """
    Enhanced error context manager for structured error logging.

    Provides methods to log errors with rich context including correlation IDs,
    system state, and business context.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_operation(self, operation_name: str, **context) -> 'OperationContext':
        """
        Start a new operation with correlation tracking.

        Args:
            operation_name: Name of the operation being performed
            **context: Additional context for the operation

        Returns:
            OperationContext: Context manager for the operation
        """
        correlation_id = generate_correlation_id()
        return OperationContext(correlation_id, operation_name, context)

    def log_error(self, message: str, error: Exception, **context):
        """
        Log an error with enhanced context.

        Args:
            message: Human-readable error message
            error: The exception that occurred
            **context: Additional context for the error
        """
        logger.error(
            message,
            extra={
                "error_type": type(error).__name__,
                "error_message": str(error),
                "correlation_id": get_correlation_id(),
                "service": self.service_name,
                "system_state": get_system_state(),
                "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
                **context
            }
        )

    def log_service_lifecycle(self, event: str, **context):
        """
        Log service lifecycle events.

        Args:
            event: The lifecycle event (start, stop, config_change, etc.)
            **context: Additional context for the event
        """
        logger.info(
            f"Service lifecycle: {event}",
            extra={
                "lifecycle_event": event,
                "correlation_id": get_correlation_id(),
                "service": self.service_name,
                "timestamp": time.time(),
                **context
            }
        )


class OperationContext:
    """Context manager for tracking operations with correlation IDs."""

    def __init__(self, correlation_id: str, operation_name: str, context: Dict[str, Any]):
        self.correlation_id = correlation_id
        self.operation_name = operation_name
        self.context = context
        self.start_time = time.time()
        self._token = None

    def __enter__(self):
        self._token = _correlation_context.set(self.correlation_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            logger.error(
                f"Operation failed: {self.operation_name}",
                extra={
                    "operation": self.operation_name,
                    "correlation_id": self.correlation_id,
                    "duration": time.time() - self.start_time,
                    "error_type": exc_type.__name__,
                    "error_message": str(exc_val),
                    "context": self.context,
                }
            )

        _correlation_context.reset(self._token)
        return False

    @property
    def duration(self) -> float:
        return time.time() - self.start_time


def classify_error(error: Exception) -> str:
    """
    Classify errors into categories for better metrics and alerting.

    Args:
        error: The exception to classify

    Returns:
        str: Error category
    """
    error_type = type(error).__name__
    error_message = str(error).lower()

    if 'connection' in error_type.lower() or 'timeout' in error_type.lower():
        return 'connection_error'
    elif 'decode' in error_type.lower() or 'shape' in error_type.lower():
        return 'decode_error'
    elif 'validation' in error_type.lower() or error_type == 'ValueError':
        return 'validation_error'
    elif 'substrate' in error_type.lower() or 'rpc' in error_message:
        return 'substrate_error'
    elif 'websocket' in error_type.lower() or 'broken pipe' in error_message:
        return 'connection_error'
    else:
        return 'unknown_error'


def log_service_start(service_name: str, **config):
    """Log service startup with configuration."""
    error_ctx = ErrorContextManager(service_name)
    error_ctx.log_service_lifecycle(
        "service_start",
        configuration=config,
        pid=os.getpid()
    )


def log_service_stop(service_name: str, **context):
    """Log service shutdown."""
    error_ctx = ErrorContextManager(service_name)
    error_ctx.log_service_lifecycle(
        "service_stop",
        **context
    )
