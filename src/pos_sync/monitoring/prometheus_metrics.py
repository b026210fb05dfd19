"""
Prometheus metrics for monitoring sync runs and provider traffic.

Metrics exported:
- pos_sync_requests_total: Total HTTP requests
- pos_sync_request_duration_seconds: Request duration histogram
- pos_sync_runs_total: Finished sync runs by provider and status
- pos_sync_run_duration_seconds: Sync run duration histogram
- pos_sync_items_total: Items processed by outcome
- pos_sync_provider_errors_total: Provider API errors by code
- pos_sync_token_refreshes_total: OAuth token refreshes by result
- pos_sync_rate_limit_wait_seconds: Time spent waiting for rate limiter capacity
- pos_sync_runs_in_progress: Runs currently executing
"""

import re
import time
from typing import Dict, Optional

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


class PrometheusMetrics:
    """
    Prometheus metrics collector for POS Sync.

    Tracks:
    - HTTP request metrics (rate, duration, status codes)
    - Sync run metrics (duration, outcome counts)
    - Provider errors and token refreshes
    - Rate limiter waits
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize Prometheus metrics.

        Args:
            registry: Prometheus registry (optional, uses default if not provided)
        """
        kwargs = {"registry": registry} if registry is not None else {}
        self.registry = registry

        # HTTP request metrics
        self.requests_total = Counter(
            "pos_sync_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            **kwargs,
        )

        self.request_duration = Histogram(
            "pos_sync_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
            **kwargs,
        )

        # Sync run metrics
        self.runs_total = Counter(
            "pos_sync_runs_total",
            "Finished sync runs",
            ["provider", "scope", "status"],
            **kwargs,
        )

        self.run_duration = Histogram(
            "pos_sync_run_duration_seconds",
            "Sync run duration in seconds",
            ["provider", "scope"],
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
            **kwargs,
        )

        self.items_total = Counter(
            "pos_sync_items_total",
            "Items processed by sync runs",
            ["provider", "outcome"],
            **kwargs,
        )

        self.runs_in_progress = Gauge(
            "pos_sync_runs_in_progress",
            "Sync runs currently executing",
            ["provider"],
            **kwargs,
        )

        # Provider metrics
        self.provider_errors_total = Counter(
            "pos_sync_provider_errors_total",
            "Errors returned by POS providers",
            ["provider", "code"],
            **kwargs,
        )

        self.token_refreshes_total = Counter(
            "pos_sync_token_refreshes_total",
            "OAuth token refreshes",
            ["provider", "result"],
            **kwargs,
        )

        self.rate_limit_wait = Histogram(
            "pos_sync_rate_limit_wait_seconds",
            "Time spent waiting for rate limiter capacity",
            ["provider"],
            buckets=[0.01, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            **kwargs,
        )

        # Celery task metrics
        self.celery_tasks_total = Counter(
            "pos_sync_celery_tasks_total",
            "Total Celery tasks",
            ["task_name", "status"],
            **kwargs,
        )

        logger.info("Prometheus metrics initialized")

    def track_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """
        Track HTTP request metrics.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: Normalized request path
            status_code: HTTP status code
            duration: Request duration in seconds
        """
        self.requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def track_sync_run(self, provider: str, scope: str, status: str, duration: float,
                       counts: Dict[str, int]):
        """
        Track a finished sync run.

        Args:
            provider: Provider identifier
            scope: catalog, inventory or full
            status: Terminal SyncLog status
            duration: Run duration in seconds
            counts: created/updated/skipped/conflicted/failed counts
        """
        self.runs_total.labels(provider=provider, scope=scope, status=status).inc()
        self.run_duration.labels(provider=provider, scope=scope).observe(duration)
        for outcome, count in counts.items():
            if count:
                self.items_total.labels(provider=provider, outcome=outcome).inc(count)

    def track_provider_error(self, provider: str, code: str):
        self.provider_errors_total.labels(provider=provider, code=code).inc()

    def track_token_refresh(self, provider: str, result: str):
        """Track a token refresh attempt (success, rejected, error)."""
        self.token_refreshes_total.labels(provider=provider, result=result).inc()

    def track_rate_limit_wait(self, provider: str, seconds: float):
        self.rate_limit_wait.labels(provider=provider).observe(seconds)

    def track_celery_task(self, task_name: str, status: str):
        """
        Track Celery task execution.

        Args:
            task_name: Name of Celery task
            status: Task status (success, failed, retry)
        """
        self.celery_tasks_total.labels(task_name=task_name, status=status).inc()


# Global metrics instance
_metrics: Optional[PrometheusMetrics] = None


def get_metrics() -> PrometheusMetrics:
    """
    Get global metrics instance.

    Returns:
        PrometheusMetrics instance
    """
    global _metrics
    if _metrics is None:
        _metrics = PrometheusMetrics()
    return _metrics


class MetricsMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for automatic request metrics collection."""

    def __init__(self, app):
        super().__init__(app)
        self.metrics = get_metrics()

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            self.metrics.track_request(
                method=request.method,
                endpoint=self._normalize_endpoint(request.url.path),
                status_code=status_code,
                duration=time.time() - start_time,
            )

    @staticmethod
    def _normalize_endpoint(path: str) -> str:
        """Replace UUIDs and numeric ids with placeholders to keep label cardinality low."""
        path = _UUID_RE.sub("{uuid}", path)
        return re.sub(r"/\d+", "/{id}", path)


async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint handler.

    Returns:
        Response with Prometheus metrics in text format
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
