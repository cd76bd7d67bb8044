"""
Worker telemetry.

Provides Prometheus metrics for cycles, phases, scraper requests and
enrichment outcomes, plus optional Sentry error capture.
"""

from sofa_worker.telemetry.metrics import (
    record_browser_recycle,
    record_browser_start,
    record_cycle,
    record_enrichment_outcome,
    record_job_run,
    record_round_fetched,
    record_scraper_request,
    record_scraper_retry,
    record_zombies_deleted,
    set_live_fixtures,
    start_metrics_server,
)
from sofa_worker.telemetry.sentry import (
    capture_exception,
    init_sentry,
    is_sentry_enabled,
    sentry_job_context,
)

__all__ = [
    "record_browser_recycle",
    "record_browser_start",
    "record_cycle",
    "record_enrichment_outcome",
    "record_job_run",
    "record_round_fetched",
    "record_scraper_request",
    "record_scraper_retry",
    "record_zombies_deleted",
    "set_live_fixtures",
    "start_metrics_server",
    "capture_exception",
    "init_sentry",
    "is_sentry_enabled",
    "sentry_job_context",
]
