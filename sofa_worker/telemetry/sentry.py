"""
Sentry integration for error tracking.

Provides:
- Exception capture with job context tags
- SQLAlchemy query errors
- ERROR log lines promoted to events

PII is disabled; request bodies are never captured.
"""

import logging
from contextlib import contextmanager
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from sofa_worker.config import Settings

logger = logging.getLogger(__name__)

# Module-level flag to track initialization
_sentry_initialized = False


def init_sentry(settings: Settings) -> bool:
    """
    Initialize the Sentry SDK if SENTRY_DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    global _sentry_initialized

    if _sentry_initialized:
        logger.debug("Sentry already initialized, skipping")
        return True

    if not settings.SENTRY_ENABLED:
        logger.info("Sentry disabled via SENTRY_ENABLED=false")
        return False

    if not settings.SENTRY_DSN:
        logger.info("Sentry not configured (SENTRY_DSN not set)")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        integrations=[
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
        ignore_errors=[KeyboardInterrupt, SystemExit],
    )

    _sentry_initialized = True
    logger.info(f"Sentry initialized: env={settings.SENTRY_ENVIRONMENT}")
    return True


def is_sentry_enabled() -> bool:
    """Check if Sentry is initialized and active."""
    return _sentry_initialized


@contextmanager
def sentry_job_context(job_id: str, **extra_tags):
    """
    Tag everything raised inside the block with the job and capture it before re-raising.

    Usage:
        with sentry_job_context("worker_cycle", instance="w1"):
            ...
    """
    if not _sentry_initialized:
        yield None
        return

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("job_id", job_id)
        scope.set_context("job", {"job_id": job_id, **extra_tags})
        for key, value in extra_tags.items():
            if value is not None:
                scope.set_tag(key, str(value))

        try:
            yield scope
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise


def capture_exception(exception: BaseException, job_id: Optional[str] = None, **extra_context):
    """Capture an exception that was handled (logged and swallowed by a phase)."""
    if not _sentry_initialized:
        return

    with sentry_sdk.new_scope() as scope:
        if job_id:
            scope.set_tag("job_id", job_id)
        for key, value in extra_context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
