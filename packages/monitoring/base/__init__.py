import signal
import threading
from loguru import logger
from .metrics import setup_metrics, shutdown_metrics_servers, MetricsRegistry, MonitorMetrics
from .enhanced_logging import (
    setup_enhanced_logger,
    ErrorContextManager,
    OperationContext,
    classify_error,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
    log_service_start,
    log_service_stop,
)


terminate_event = threading.Event()


def shutdown_handler(signum, frame):
    logger.info("Shutdown signal received. Waiting for current processing to complete...")
    terminate_event.set()


def install_shutdown_handlers():
    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)
