"""
Sentry integration for error tracking.

Initialised by each entry point when ``SENTRY_DSN`` is configured; every
helper here is a no-op for Sentry itself when it is not.
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from pos_sync import __version__
from pos_sync.utils.exceptions import ConflictPendingReview, RateLimited
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Expected outcomes, already visible in SyncLogs and metrics
_IGNORED_EXCEPTIONS = (ConflictPendingReview, RateLimited)


def setup_sentry(dsn: Optional[str] = None, environment: Optional[str] = None,
                 release: Optional[str] = None, traces_sample_rate: float = 0.1) -> bool:
    """
    Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN; read from configuration if not provided
        environment: Deployment environment
        release: Release version (defaults to ``pos-sync@<version>``)
        traces_sample_rate: Share of transactions to trace (0.0-1.0)

    Returns:
        True if Sentry was initialised
    """
    if dsn is None or environment is None:
        from pos_sync.utils.config import get_config
        config = get_config()
        dsn = dsn or config.sentry_dsn
        environment = environment or config.environment

    if not dsn:
        logger.info("Sentry DSN not configured, skipping Sentry initialization")
        return False

    release = release or f"pos-sync@{__version__}"

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(monitor_beat_tasks=True),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=traces_sample_rate,
        before_send=before_send_filter,
        attach_stacktrace=True,
        send_default_pii=False,
        max_breadcrumbs=50,
    )

    logger.info(f"Sentry initialized: environment={environment}, release={release}")
    return True


def before_send_filter(event, hint):
    """Drop events for expected, already-tracked outcomes."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        if isinstance(exc_value, _IGNORED_EXCEPTIONS):
            return None
    return event


def set_integration_context(tenant_id: str, provider: str, integration_id: Optional[str] = None):
    """
    Attach the Integration being worked on to subsequent Sentry events.

    Args:
        tenant_id: Tenant identifier
        provider: Provider identifier
        integration_id: Integration UUID
    """
    sentry_sdk.set_tag("tenant_id", tenant_id)
    sentry_sdk.set_tag("provider", provider)
    sentry_sdk.set_context("integration", {
        "tenant_id": tenant_id,
        "provider": provider,
        "integration_id": integration_id,
    })


def capture_exception(exception: Exception, **extra):
    """Capture an exception with extra context."""
    with sentry_sdk.new_scope() as scope:
        for key, value in extra.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def add_breadcrumb(message: str, category: str = "sync", level: str = "info", **data):
    sentry_sdk.add_breadcrumb(message=message, category=category, level=level, data=data)
