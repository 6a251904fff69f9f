"""
Core metrics module.

Counters, gauges and timings are sent to a StatsD server over UDP with
DogStatsD-style tags. Everything is a no-op unless ``METRICS_ENABLED`` is set.
"""

import functools
import random
import socket
import time
from typing import Any, Callable, Dict, List, Optional

from opportunity_matcher.core.config import settings
from opportunity_matcher.log.logging import logger


class MetricNames:
    """Standardized metric names for the application."""

    EMBEDDING_REQUEST_DURATION = "embedding.request.duration"
    EMBEDDING_FAILOVER_COUNT = "embedding.failover.count"
    EMBEDDING_UNAVAILABLE_COUNT = "embedding.unavailable.count"

    VECTORDB_OPERATION_DURATION = "db.vectordb.operation.duration"

    SYNC_CREATED = "sync.created"
    SYNC_DELETED = "sync.deleted"
    SYNC_ERRORS = "sync.errors"

    RECOMMENDATION_DURATION = "recommendation.duration"
    RECOMMENDATION_COUNT = "recommendation.count"
    RECOMMENDATION_FALLBACK_COUNT = "recommendation.fallback.count"

    TASK_DURATION = "task.duration"
    TASK_COUNT = "task.count"

    EMBEDDING_RECORDS = "embedding.records"
    USER_VECTORS = "embedding.user_vectors"


class StatsDBackend:
    """
    StatsD metrics backend.

    Sends timers, gauges and counters using the UDP protocol.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8125, prefix: str = ""):
        self.host = host
        self.port = port
        self.prefix = prefix
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def _send_metric(self, metric_str: str) -> None:
        try:
            self.socket.sendto(metric_str.encode("utf-8"), (self.host, self.port))
        except Exception as e:
            logger.error(
                "Failed to send metric to StatsD server",
                error=str(e),
                host=self.host,
                port=self.port,
            )

    def _format(self, name: str, value: Any, kind: str, tags: Optional[List[str]]) -> str:
        full_name = f"{self.prefix}.{name}" if self.prefix else name
        metric_str = f"{full_name}:{value}|{kind}"
        if tags:
            metric_str += "|#" + ",".join(tags)
        return metric_str

    def timing(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        """Report a timing metric. ``value`` is in seconds, sent as milliseconds."""
        self._send_metric(self._format(name, value * 1000, "ms", tags))

    def gauge(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        self._send_metric(self._format(name, value, "g", tags))

    def incr(self, name: str, value: int = 1, tags: Optional[List[str]] = None) -> None:
        self._send_metric(self._format(name, value, "c", tags))


_metrics_backend: Optional[StatsDBackend] = None


def _get_statsd_client() -> Optional[StatsDBackend]:
    """
    Get or initialize the StatsD client.

    May be mocked in tests.
    """
    global _metrics_backend

    if _metrics_backend is None and settings.metrics_enabled:
        _metrics_backend = StatsDBackend(
            host=settings.metrics_statsd_host,
            port=settings.metrics_statsd_port,
            prefix=settings.metrics_prefix,
        )
        logger.info(
            "Initialized StatsD metrics backend",
            host=settings.metrics_statsd_host,
            port=settings.metrics_statsd_port,
        )

    return _metrics_backend


def _should_sample() -> bool:
    if not settings.metrics_enabled:
        return False
    if settings.metrics_sample_rate >= 1.0:
        return True
    return random.random() < settings.metrics_sample_rate


def _format_tags(tags: Optional[Dict[str, str]]) -> List[str]:
    merged = {"env": settings.metrics_environment}
    if tags:
        merged.update(tags)
    return [f"{k}:{v}" for k, v in merged.items()]


def report_timing(name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
    """
    Report a timing metric.

    Example:
        report_timing("embedding.request.duration", 0.153, {"provider": "openai"})
    """
    if not _should_sample():
        return
    client = _get_statsd_client()
    if client:
        client.timing(name, value, tags=_format_tags(tags))


def report_gauge(name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
    if not _should_sample():
        return
    client = _get_statsd_client()
    if client:
        client.gauge(name, value, tags=_format_tags(tags))


def increment_counter(name: str, tags: Optional[Dict[str, str]] = None, value: int = 1) -> None:
    if not _should_sample():
        return
    client = _get_statsd_client()
    if client:
        client.incr(name, value, tags=_format_tags(tags))


def async_timer(metric_name: str, tags: Optional[Dict[str, str]] = None) -> Callable:
    """
    Decorator to time async function execution.

    Example:
        @async_timer("db.vectordb.operation.duration", {"operation": "query"})
        async def query(...):
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not settings.metrics_enabled:
                return await func(*args, **kwargs)

            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                report_timing(metric_name, time.time() - start_time, tags)

        return wrapper
    return decorator
