import os
import threading
import socket
from typing import Dict, Optional, Any
from prometheus_client import (
    CollectorRegistry, Counter, Histogram, Gauge, Info,
    start_http_server, generate_latest
)
from loguru import logger

# Global metrics registry per service
_service_registries: Dict[str, "MetricsRegistry"] = {}
_metrics_servers: Dict[str, Any] = {}
_metrics_lock = threading.Lock()


class MetricsRegistry:
    """Centralized metrics registry for a service following logging conventions"""

    def __init__(self, service_name: str, port: Optional[int] = None):
        self.service_name = service_name
        self.registry = CollectorRegistry()
        self.port = port
        self.server = None
        self._common_labels = self._extract_labels_from_service_name(service_name)

        self._init_common_metrics()

    def _extract_labels_from_service_name(self, service_name: str) -> Dict[str, str]:
        """Extract common labels from service name following logging conventions"""
        labels = {"service": service_name}

        # Parse service name patterns like 'substrate-moonbeam-block-monitor'
        parts = service_name.split('-')
        if len(parts) >= 3 and parts[0] == 'substrate':
            labels["network"] = parts[1]
            labels["component"] = '-'.join(parts[2:])

        return labels

    def _init_common_metrics(self):
        """Initialize common metrics available to all services"""
        self.service_info = Info(
            'service_info',
            'Service information',
            registry=self.registry
        )
        self.service_info.info({
            'service_name': self.service_name,
            'version': '1.0.0',
            **self._common_labels
        })

        self.service_start_time = Gauge(
            'service_start_time_seconds',
            'Service start time in Unix timestamp',
            registry=self.registry
        )
        self.service_start_time.set_to_current_time()

        self.errors_total = Counter(
            'service_errors_total',
            'Total number of errors by type',
            ['error_type', 'component'],
            registry=self.registry
        )

        self.health_status = Gauge(
            'service_health_status',
            'Service health status (1=healthy, 0=unhealthy)',
            registry=self.registry
        )
        self.health_status.set(1)

    def create_counter(self, name: str, description: str, labelnames: list = None) -> Counter:
        """Create a counter metric with common labels"""
        return Counter(
            name, description,
            labelnames or [],
            registry=self.registry
        )

    def create_histogram(self, name: str, description: str, labelnames: list = None,
                        buckets: tuple = None) -> Histogram:
        """Create a histogram metric with common labels"""
        kwargs = {
            'name': name,
            'documentation': description,
            'labelnames': labelnames or [],
            'registry': self.registry
        }
        if buckets:
            kwargs['buckets'] = buckets
        return Histogram(**kwargs)

    def create_gauge(self, name: str, description: str, labelnames: list = None) -> Gauge:
        """Create a gauge metric with common labels"""
        return Gauge(
            name, description,
            labelnames or [],
            registry=self.registry
        )

    def start_metrics_server(self, port: Optional[int] = None) -> bool:
        """Start HTTP server for metrics endpoint"""
        if self.server is not None:
            logger.warning(f"Metrics server already running for {self.service_name}")
            return True

        target_port = port or self.port or self._get_default_port()

        try:
            if not self._is_port_available(target_port):
                logger.warning(f"Port {target_port} not available, trying next available port")
                target_port = self._find_available_port(target_port)

            self.server = start_http_server(target_port, registry=self.registry)
            self.port = target_port
            logger.info(f"Metrics server started for {self.service_name} on port {target_port}")
            return True

        except Exception as e:
            logger.error(f"Failed to start metrics server for {self.service_name}: {e}")
            return False

    def _get_default_port(self) -> int:
        """Get default port from BLOCK_MONITOR_METRICS_PORT / METRICS_PORT"""
        for env_var in ('BLOCK_MONITOR_METRICS_PORT', 'METRICS_PORT'):
            env_port = os.getenv(env_var)
            if env_port:
                try:
                    return int(env_port)
                except ValueError:
                    logger.warning(f"Invalid {env_var} value: {env_port}, using default")

        return 9105

    def _is_port_available(self, port: int) -> bool:
        """Check if port is available"""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(('localhost', port))
                return True
        except OSError:
            return False

    def _find_available_port(self, start_port: int) -> int:
        """Find next available port starting from start_port"""
        for port in range(start_port, start_port + 100):
            if self._is_port_available(port):
                return port
        raise RuntimeError(f"No available ports found starting from {start_port}")

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format"""
        return generate_latest(self.registry).decode('utf-8')

    def record_error(self, error_type: str, component: str = "unknown"):
        """Record an error occurrence"""
        self.errors_total.labels(error_type=error_type, component=component).inc()

    def set_health_status(self, healthy: bool):
        """Set service health status"""
        self.health_status.set(1 if healthy else 0)


def setup_metrics(service_name: str, port: Optional[int] = None,
                 start_server: bool = True) -> MetricsRegistry:
    """
    Setup metrics for a service following the same pattern as setup_logger.

    Args:
        service_name: Name of the service (e.g., 'substrate-moonbeam-block-monitor')
        port: Optional port for metrics server
        start_server: Whether to start HTTP server immediately

    Returns:
        MetricsRegistry: Configured metrics registry for the service
    """
    with _metrics_lock:
        if service_name in _service_registries:
            logger.debug(f"Metrics already setup for {service_name}")
            return _service_registries[service_name]

        metrics_registry = MetricsRegistry(service_name, port)
        _service_registries[service_name] = metrics_registry

        if start_server:
            success = metrics_registry.start_metrics_server()
            if success:
                _metrics_servers[service_name] = metrics_registry.server

        logger.info(f"Metrics setup completed for service: {service_name}")
        return metrics_registry


def shutdown_metrics_servers():
    """Shutdown all metrics servers"""
    with _metrics_lock:
        for service_name, server in _metrics_servers.items():
            try:
                if isinstance(server, tuple):
                    server[0].shutdown()
                elif hasattr(server, 'shutdown'):
                    server.shutdown()
                logger.info(f"Shutdown metrics server for {service_name}")
            except Exception as e:
                logger.error(f"Error shutting down metrics server for {service_name}: {e}")

        _metrics_servers.clear()


DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float('inf'))
COUNT_BUCKETS = (1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, float('inf'))


class MonitorMetrics:
    """Standard metrics for the block monitor"""

    def __init__(self, registry: MetricsRegistry, network: str, mode: str):
        self.registry = registry
        self.network = network
        self.mode = mode

        self.blocks_aggregated_total = registry.create_counter(
            'monitor_blocks_aggregated_total',
            'Total number of blocks aggregated',
            ['network', 'mode']
        )

        self.current_block_number = registry.create_gauge(
            'monitor_current_block_number',
            'Number of the last aggregated block',
            ['network', 'mode']
        )

        self.aggregation_duration = registry.create_histogram(
            'monitor_block_aggregation_duration_seconds',
            'Time spent aggregating block details',
            ['network', 'mode'],
            buckets=DURATION_BUCKETS
        )

        self.extrinsics_per_block = registry.create_histogram(
            'monitor_extrinsics_per_block',
            'Extrinsic count per aggregated block',
            ['network', 'mode'],
            buckets=COUNT_BUCKETS
        )

        self.failed_aggregations_total = registry.create_counter(
            'monitor_failed_aggregations_total',
            'Total failed block aggregations',
            ['network', 'mode', 'error_type']
        )

        self.identity_cache_lookups_total = registry.create_counter(
            'monitor_identity_cache_lookups_total',
            'Identity and author mapping cache lookups',
            ['network', 'cache', 'result']
        )

        self.pending_pool_size = registry.create_gauge(
            'monitor_pending_pool_size',
            'Pending transaction pool size at the last head',
            ['network']
        )

    def record_block_aggregated(self, block_number: int, extrinsic_count: int, duration: float):
        """Record an aggregated block"""
        labels = {'network': self.network, 'mode': self.mode}
        self.blocks_aggregated_total.labels(**labels).inc()
        self.current_block_number.labels(**labels).set(block_number)
        self.aggregation_duration.labels(**labels).observe(duration)
        self.extrinsics_per_block.labels(**labels).observe(extrinsic_count)

    def record_failed_aggregation(self, error_type: str):
        """Record a failed aggregation"""
        labels = {'network': self.network, 'mode': self.mode, 'error_type': error_type}
        self.failed_aggregations_total.labels(**labels).inc()

    def record_cache_lookup(self, cache: str, hit: bool, count: int = 1):
        """Record identity/author cache hits and misses"""
        labels = {'network': self.network, 'cache': cache, 'result': 'hit' if hit else 'miss'}
        self.identity_cache_lookups_total.labels(**labels).inc(count)

    def update_pending_pool_size(self, size: int):
        """Update pending pool size metric"""
        self.pending_pool_size.labels(network=self.network).set(size)
