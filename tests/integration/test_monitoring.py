"""
Integration tests for metrics and error tracking
"""
import pytest
from prometheus_client import CollectorRegistry

from pos_sync.monitoring.prometheus_metrics import MetricsMiddleware, PrometheusMetrics
from pos_sync.monitoring.sentry_config import before_send_filter, setup_sentry
from pos_sync.utils.exceptions import (
    ConflictPendingReview, PermanentProviderError, RateLimited,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return PrometheusMetrics(registry=registry)


class TestPrometheusMetrics:
    """Test metric recording against an isolated registry"""

    def test_track_sync_run(self, metrics, registry):
        metrics.track_sync_run("square", "catalog", "partial_failure", 12.5,
                               {"created": 3, "updated": 0, "skipped": 1, "conflicted": 0, "failed": 2})

        assert registry.get_sample_value(
            "pos_sync_runs_total", {"provider": "square", "scope": "catalog", "status": "partial_failure"}
        ) == 1.0
        assert registry.get_sample_value(
            "pos_sync_items_total", {"provider": "square", "outcome": "created"}
        ) == 3.0
        assert registry.get_sample_value(
            "pos_sync_items_total", {"provider": "square", "outcome": "updated"}
        ) is None
        assert registry.get_sample_value(
            "pos_sync_run_duration_seconds_sum", {"provider": "square", "scope": "catalog"}
        ) == 12.5

    def test_track_request(self, metrics, registry):
        metrics.track_request("GET", "/api/v1/integrations/square/logs", 200, 0.02)

        assert registry.get_sample_value(
            "pos_sync_requests_total",
            {"method": "GET", "endpoint": "/api/v1/integrations/square/logs", "status_code": "200"},
        ) == 1.0

    def test_provider_and_refresh_counters(self, metrics, registry):
        metrics.track_provider_error("clover", "rate_limited")
        metrics.track_provider_error("clover", "rate_limited")
        metrics.track_token_refresh("clover", "rejected")

        assert registry.get_sample_value(
            "pos_sync_provider_errors_total", {"provider": "clover", "code": "rate_limited"}
        ) == 2.0
        assert registry.get_sample_value(
            "pos_sync_token_refreshes_total", {"provider": "clover", "result": "rejected"}
        ) == 1.0

    def test_endpoint_normalization(self):
        path = "/api/v1/integrations/square/sync/3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e"

        assert MetricsMiddleware._normalize_endpoint(path) == "/api/v1/integrations/square/sync/{uuid}"
        assert MetricsMiddleware._normalize_endpoint("/items/42") == "/items/{id}"


class TestSentryFilter:

    @pytest.mark.parametrize("error", [
        RateLimited(retry_after=2),
        ConflictPendingReview("price differs", field="price"),
    ])
    def test_expected_outcomes_dropped(self, error):
        hint = {"exc_info": (type(error), error, None)}

        assert before_send_filter({"event_id": "1"}, hint) is None

    def test_other_errors_kept(self):
        error = PermanentProviderError("bad request", status_code=400)
        event = {"event_id": "2"}

        assert before_send_filter(event, {"exc_info": (type(error), error, None)}) is event
        assert before_send_filter(event, {}) is event

    def test_setup_without_dsn(self):
        assert setup_sentry(dsn="", environment="test") is False
