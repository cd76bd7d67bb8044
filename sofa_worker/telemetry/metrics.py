"""
Prometheus metrics for the enrichment worker.

Design principles:
- Low cardinality (controlled labels)
- Best-effort (never block main flow)

ALLOWED LABELS (bounded sets):
- job:        "worker_cycle", "reconcile", "rounds", "live_sync", "enrich", "limbo", "standings"
- operation:  "live", "round", "knockout", "details", "statistics", "incidents", "enrich", "standings"
- status:     "ok", "error", "not_found"
- outcome:    "enriched", "postponed", "cancelled", "partial", "pending", "error", "failed"
- reason:     "unhealthy", "max_age", "max_operations", "not_started"
- kind:       "league", "knockout", "bootstrap"

Fixture IDs, team names and URLs are NEVER labels; log them instead.
"""

import logging
import time

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# =============================================================================
# WORKER / JOB METRICS
# =============================================================================

worker_cycles_total = Counter(
    "sofa_worker_cycles_total",
    "Enrichment worker cycles by status",
    ["status"],  # ok, error
)

worker_cycle_duration_ms = Histogram(
    "sofa_worker_cycle_duration_ms",
    "Enrichment worker cycle duration in milliseconds",
    buckets=[500, 1000, 5000, 15000, 30000, 60000, 120000, 300000, 600000],
)

worker_next_delay_seconds = Gauge(
    "sofa_worker_next_delay_seconds",
    "Delay chosen for the next worker cycle",
)

job_runs_total = Counter(
    "sofa_job_runs_total",
    "Worker phase runs by status",
    ["job", "status"],
)

job_duration_ms = Histogram(
    "sofa_job_duration_ms",
    "Worker phase duration in milliseconds",
    ["job"],
    buckets=[10, 50, 100, 500, 1000, 5000, 15000, 60000, 300000],
)

job_last_success_timestamp = Gauge(
    "sofa_job_last_success_timestamp",
    "Unix timestamp of the last successful phase run",
    ["job"],
)

live_fixtures_gauge = Gauge(
    "sofa_live_fixtures",
    "Monitored fixtures currently in the live feed",
)

# =============================================================================
# SCRAPER / BROWSER METRICS
# =============================================================================

scraper_requests_total = Counter(
    "sofa_scraper_requests_total",
    "Scraper operations by outcome",
    ["operation", "status"],
)

scraper_retries_total = Counter(
    "sofa_scraper_retries_total",
    "Failed scraper attempts that triggered a session reset",
    ["operation"],
)

browser_sessions_started_total = Counter(
    "sofa_browser_sessions_started_total",
    "Browser sessions launched",
)

browser_session_recycles_total = Counter(
    "sofa_browser_session_recycles_total",
    "Browser sessions torn down and relaunched",
    ["reason"],
)

# =============================================================================
# DATA METRICS
# =============================================================================

enrichment_outcomes_total = Counter(
    "sofa_enrichment_outcomes_total",
    "Per-fixture enrichment results",
    ["outcome"],
)

zombie_fixtures_deleted_total = Counter(
    "sofa_zombie_fixtures_deleted_total",
    "Stale duplicate fixtures removed by reconciliation",
)

rounds_fetched_total = Counter(
    "sofa_rounds_fetched_total",
    "Rounds/phases fetched and inserted",
    ["kind"],
)


# =============================================================================
# HELPERS (never raise)
# =============================================================================


def record_job_run(job: str, status: str, duration_ms: float) -> None:
    """Record a phase run with status and duration."""
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set(time.time())
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def record_cycle(status: str, duration_ms: float, next_delay_seconds: float) -> None:
    try:
        worker_cycles_total.labels(status=status).inc()
        worker_cycle_duration_ms.observe(duration_ms)
        worker_next_delay_seconds.set(next_delay_seconds)
    except Exception as e:
        logger.warning(f"Failed to record cycle metric: {e}")


def record_scraper_request(operation: str, status: str) -> None:
    try:
        scraper_requests_total.labels(operation=operation, status=status).inc()
    except Exception as e:
        logger.warning(f"Failed to record scraper metric: {e}")


def record_scraper_retry(operation: str) -> None:
    try:
        scraper_retries_total.labels(operation=operation).inc()
    except Exception as e:
        logger.warning(f"Failed to record scraper retry metric: {e}")


def record_browser_start() -> None:
    try:
        browser_sessions_started_total.inc()
    except Exception as e:
        logger.warning(f"Failed to record browser start metric: {e}")


def record_browser_recycle(reason: str) -> None:
    try:
        browser_session_recycles_total.labels(reason=reason).inc()
    except Exception as e:
        logger.warning(f"Failed to record browser recycle metric: {e}")


def record_enrichment_outcome(outcome: str) -> None:
    try:
        enrichment_outcomes_total.labels(outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record enrichment metric: {e}")


def record_zombies_deleted(count: int) -> None:
    try:
        if count > 0:
            zombie_fixtures_deleted_total.inc(count)
    except Exception as e:
        logger.warning(f"Failed to record reconciliation metric: {e}")


def record_round_fetched(kind: str) -> None:
    try:
        rounds_fetched_total.labels(kind=kind).inc()
    except Exception as e:
        logger.warning(f"Failed to record round metric: {e}")


def set_live_fixtures(count: int) -> None:
    try:
        live_fixtures_gauge.set(count)
    except Exception as e:
        logger.warning(f"Failed to set live fixtures gauge: {e}")


def start_metrics_server(port: int) -> bool:
    """Expose /metrics on `port`; 0 disables the exporter."""
    if port <= 0:
        logger.info("Metrics exporter disabled (METRICS_PORT=0)")
        return False
    try:
        start_http_server(port)
    except OSError as e:
        logger.warning(f"Metrics exporter could not bind port {port}: {e}")
        return False
    logger.info(f"Metrics exporter listening on :{port}")
    return True
