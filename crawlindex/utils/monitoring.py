"""
Metrics collection for the crawl index pipeline.
"""

import time
import logging
from typing import Dict, Optional, Any

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest
from prometheus_client import start_http_server


class MetricsCollector:
    """Keeps current metric values and mirrors them into a Prometheus registry."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.values: Dict[str, float] = {}
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port

        # One registry per collector so repeated runs never collide
        self.prometheus_registry = CollectorRegistry()
        self.prometheus_metrics = {
            'pages_processed_total': Counter(
                'crawlindex_pages_processed_total',
                'Pages processed by outcome',
                ['outcome'],
                registry=self.prometheus_registry
            ),
            'fetch_retries_total': Counter(
                'crawlindex_fetch_retries_total',
                'Fetch attempts that were retried',
                registry=self.prometheus_registry
            ),
            'documents_indexed_total': Counter(
                'crawlindex_documents_indexed_total',
                'Documents upserted into the index store',
                registry=self.prometheus_registry
            ),
            'index_rate_limited_total': Counter(
                'crawlindex_index_rate_limited_total',
                'Index store calls rejected with a rate-limit signal',
                registry=self.prometheus_registry
            ),
            'errors_total': Counter(
                'crawlindex_errors_total',
                'Errors by type',
                ['error_type'],
                registry=self.prometheus_registry
            ),
            'batch_size': Histogram(
                'crawlindex_batch_size',
                'Documents per index batch',
                buckets=(1, 5, 10, 25, 50, 100),
                registry=self.prometheus_registry
            ),
            'pending_documents': Gauge(
                'crawlindex_pending_documents',
                'Documents buffered and not yet flushed',
                registry=self.prometheus_registry
            ),
        }

    async def start_prometheus_server(self):
        """Start Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.prometheus_registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def increment_counter(self, name: str, labels: Optional[Dict[str, str]] = None,
                          amount: float = 1):
        """Increment a counter metric."""
        key = self._key(name, labels)
        self.values[key] = self.values.get(key, 0) + amount

        prom_metric = self.prometheus_metrics.get(name)
        if prom_metric is not None:
            if labels:
                prom_metric.labels(**labels).inc(amount)
            else:
                prom_metric.inc(amount)

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric value."""
        self.values[name] = value
        prom_metric = self.prometheus_metrics.get(name)
        if prom_metric is not None:
            prom_metric.set(value)

    def observe_histogram(self, name: str, value: float):
        """Record a histogram observation."""
        self.values[name] = value
        prom_metric = self.prometheus_metrics.get(name)
        if prom_metric is not None:
            prom_metric.observe(value)

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        return dict(self.values)

    def export_text(self) -> bytes:
        """Render the registry in the Prometheus exposition format."""
        return generate_latest(self.prometheus_registry)

    @staticmethod
    def _key(name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ','.join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


class CrawlerMonitor:
    """High-level monitoring interface for the pipeline."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_page(self, url: str, succeeded: bool):
        """Record a page that reached a terminal outcome."""
        outcome = 'succeeded' if succeeded else 'failed'
        self.metrics.increment_counter('pages_processed_total', {'outcome': outcome})

    def record_skipped(self, url: str):
        self.metrics.increment_counter('pages_processed_total', {'outcome': 'skipped'})

    def record_fetch_retry(self, url: str):
        self.metrics.increment_counter('fetch_retries_total')

    def record_batch_indexed(self, document_count: int):
        self.metrics.increment_counter('documents_indexed_total', amount=document_count)
        self.metrics.observe_histogram('batch_size', document_count)

    def record_rate_limited(self):
        self.metrics.increment_counter('index_rate_limited_total')

    def record_error(self, error_type: str):
        """Record an error event."""
        self.metrics.increment_counter('errors_total', {'error_type': error_type})

    def update_pending(self, count: int):
        self.metrics.set_gauge('pending_documents', count)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        runtime = time.time() - self.start_time
        return {
            'runtime_seconds': runtime,
            'metrics': self.metrics.get_current_values(),
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor backed by a fresh metrics collector."""
    return CrawlerMonitor(MetricsCollector(enable_prometheus, prometheus_port))
