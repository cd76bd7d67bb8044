"""Telemetry helpers must never break the worker when unconfigured."""

import pytest

from sofa_worker.config import Settings
from sofa_worker.telemetry import (
    capture_exception,
    init_sentry,
    is_sentry_enabled,
    record_cycle,
    record_enrichment_outcome,
    record_job_run,
    record_zombies_deleted,
    sentry_job_context,
    start_metrics_server,
)


class TestSentryDisabled:

    def test_init_without_dsn(self):
        assert init_sentry(Settings(SENTRY_DSN="")) is False
        assert is_sentry_enabled() is False

    def test_job_context_passes_through(self):
        with sentry_job_context("worker_cycle") as scope:
            assert scope is None

    def test_job_context_reraises(self):
        with pytest.raises(ValueError):
            with sentry_job_context("worker_cycle"):
                raise ValueError("boom")

    def test_capture_is_noop(self):
        capture_exception(RuntimeError("handled"), job_id="enrich", fixture_id=1)


class TestMetrics:

    def test_record_helpers(self):
        record_job_run(job="enrich", status="ok", duration_ms=12.5)
        record_cycle(status="ok", duration_ms=1500.0, next_delay_seconds=60)
        record_enrichment_outcome("enriched")
        record_zombies_deleted(0)
        record_zombies_deleted(2)

    def test_exporter_disabled_by_default(self):
        assert start_metrics_server(0) is False
