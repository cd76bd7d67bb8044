"""Tests for the enrichment worker cycle against a real store and a scripted source."""

import asyncio

import pytest

from sofa_worker.enrichment_worker import CycleReport, EnrichmentWorker, WorkerOptions
from sofa_worker.etl.base import (
    BrowserSessionError,
    EnrichmentBundle,
    SourceError,
    StandingRowData,
    StatisticItemData,
)
from sofa_worker.etl.competitions import TournamentRegistry
from sofa_worker.models import ProcessingStatus
from sofa_worker.services.reconciliation import ReconciliationReconciler
from sofa_worker.services.round_scheduler import RoundScheduler

from conftest import LEAGUE, NOW_TS, make_event

OPTIONS = WorkerOptions(
    active_delay_seconds=60,
    idle_delay_seconds=900,
    inter_fixture_delay_seconds=2.0,
    enrichment_batch_size=10,
    limbo_batch_size=3,
    limbo_cutoff_hours=3,
)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def worker(store, fake_source, sleeps):
    async def sleep(seconds):
        sleeps.append(seconds)

    registry = TournamentRegistry([LEAGUE])
    rounds = RoundScheduler(store, fake_source, registry, "worker-a", bootstrap_enabled=False, sleep=sleep)
    return EnrichmentWorker(
        store,
        fake_source,
        registry,
        ReconciliationReconciler(store),
        rounds,
        options=OPTIONS,
        clock=lambda: float(NOW_TS),
        sleep=sleep,
    )


def _ended(fixture_id, stats=1):
    return EnrichmentBundle(
        event=make_event(fixture_id, status="Ended", status_type="finished", home_score=1),
        statistics=[
            StatisticItemData(period="ALL", name="Corners", home_value="4", away_value="2")
            for _ in range(stats)
        ],
    )


class TestCycle:

    @pytest.mark.asyncio
    async def test_live_to_enriched_in_one_cycle(self, worker, store, fake_source, add_fixture):
        """Live fixtures that end are handed off, enriched, and the table synced once."""
        await add_fixture(1, ProcessingStatus.IN_PROGRESS, status="2nd half", status_type="inprogress")
        await add_fixture(2, ProcessingStatus.IN_PROGRESS, status="2nd half", status_type="inprogress", home="C")
        fake_source.live = [
            make_event(1, status="Ended", status_type="finished", home_score=1),
            make_event(2, status="Ended", status_type="finished", home="C"),
        ]
        fake_source.bundles = {1: _ended(1), 2: _ended(2)}
        fake_source.standings[LEAGUE.tournament_id] = [
            StandingRowData(team_id=42, team_name="Club A", position=1, points=3),
        ]

        report = await worker.run_cycle()

        assert report.errors == []
        assert report.live_count == 2
        assert sorted(report.enriched_ids) == [1, 2]
        assert report.post_game_processed == 2
        assert report.stuck_processed == 0
        assert report.standings_synced == [LEAGUE.tournament_id]
        assert len(fake_source.called("standings")) == 1
        assert report.next_delay_seconds == 60
        for fixture_id in (1, 2):
            assert (await store.get_fixture(fixture_id)).processing_status == ProcessingStatus.ENRICHED
        assert len(await store.list_standings(LEAGUE.tournament_id, LEAGUE.season_id)) == 1

    @pytest.mark.asyncio
    async def test_idle_cycle_uses_idle_delay_and_closes_browser(self, worker, fake_source):
        report = await worker.run_cycle()

        assert report.idle
        assert report.next_delay_seconds == 900
        assert fake_source.closed == 1
        assert fake_source.called("enrich") == []

    @pytest.mark.asyncio
    async def test_live_fixtures_keep_cycle_active(self, worker, fake_source, add_fixture):
        await add_fixture(1, ProcessingStatus.IN_PROGRESS, status="1st half", status_type="inprogress")
        fake_source.live = [make_event(1, status="1st half", status_type="inprogress")]

        report = await worker.run_cycle()

        assert report.next_delay_seconds == 60
        assert fake_source.closed == 0
        assert fake_source.called("enrich") == []

    @pytest.mark.asyncio
    async def test_failing_fixture_does_not_stop_siblings(self, worker, store, fake_source, add_fixture, sleeps):
        await add_fixture(1, status="Ended", start_timestamp=NOW_TS - 7200)
        await add_fixture(2, status="Ended", start_timestamp=NOW_TS - 3600, home="C")
        fake_source.enrich_errors[1] = SourceError("HTTP 500")
        fake_source.bundles[2] = _ended(2)

        report = await worker.run_cycle()

        assert report.failed_ids == [1]
        assert report.enriched_ids == [2]
        assert sleeps.count(2.0) == 1
        failed = await store.get_fixture(1)
        assert failed.processing_status == ProcessingStatus.PENDING
        assert failed.enrichment_attempts == 1
        assert "HTTP 500" in failed.last_enrichment_error

    @pytest.mark.asyncio
    async def test_attempt_cap_stops_retrying(self, worker, store, fake_source, add_fixture):
        await add_fixture(1, status="Ended")
        fake_source.enrich_errors[1] = SourceError("HTTP 500")

        for _ in range(4):
            await worker.run_cycle()

        assert len(fake_source.called("enrich")) == 3
        assert (await store.get_fixture(1)).processing_status == ProcessingStatus.ERROR

    @pytest.mark.asyncio
    async def test_stuck_live_fixture_stops_at_attempt_cap(self, worker, store, fake_source, add_fixture):
        await add_fixture(1, ProcessingStatus.IN_PROGRESS, status="2nd half", status_type="inprogress")
        fake_source.enrich_errors[1] = SourceError("HTTP 500")

        for _ in range(10):
            await worker.run_cycle()

        assert len(fake_source.called("enrich")) == 3
        fixture = await store.get_fixture(1)
        assert fixture.processing_status == ProcessingStatus.ERROR
        assert fixture.enrichment_attempts == 3

    @pytest.mark.asyncio
    async def test_failed_post_game_fetch_leaves_cycle_idle(self, worker, store, fake_source, add_fixture):
        await add_fixture(1, status="Ended")
        fake_source.enrich_errors[1] = SourceError("HTTP 500")

        report = await worker.run_cycle()

        assert report.post_game_processed == 1
        assert report.post_game_enriched == 0
        assert report.failed_ids == [1]
        assert report.next_delay_seconds == 900

    @pytest.mark.asyncio
    async def test_live_feed_failure_skips_stuck_detection(self, worker, fake_source, add_fixture):
        await add_fixture(1, ProcessingStatus.IN_PROGRESS, status="2nd half", status_type="inprogress")
        fake_source.live_error = SourceError("HTTP 403")

        report = await worker.run_cycle()

        assert report.live_sync_ok is False
        assert report.errors and report.errors[0].startswith("live_sync")
        assert fake_source.called("enrich") == []
        assert report.next_delay_seconds == 60

    @pytest.mark.asyncio
    async def test_stuck_live_fixture_forced(self, worker, store, fake_source, add_fixture):
        await add_fixture(1, ProcessingStatus.IN_PROGRESS, status="2nd half", status_type="inprogress")
        fake_source.bundles[1] = _ended(1)

        report = await worker.run_cycle()

        assert report.stuck_processed == 1
        assert report.enriched_ids == [1]
        assert (await store.get_fixture(1)).processing_status == ProcessingStatus.ENRICHED

    @pytest.mark.asyncio
    async def test_limbo_recovery(self, worker, store, fake_source, add_fixture):
        await add_fixture(1, start_timestamp=NOW_TS - 5 * 3600)
        await add_fixture(2, start_timestamp=NOW_TS - 3600, home="C")
        fake_source.bundles[1] = _ended(1)

        report = await worker.run_cycle()

        assert report.limbo_processed == 1
        assert fake_source.called("enrich") == [("enrich", 1)]
        assert (await store.get_fixture(1)).processing_status == ProcessingStatus.ENRICHED

    @pytest.mark.asyncio
    async def test_zombies_removed_first(self, worker, store, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed")
        await add_fixture(200, ProcessingStatus.ENRICHED, status="Ended")

        report = await worker.run_cycle()

        assert report.zombies_deleted == 1
        assert await store.get_fixture(100) is None

    @pytest.mark.asyncio
    async def test_browser_failure_ends_cycle_without_consuming_attempts(
        self, worker, store, fake_source, add_fixture
    ):
        await add_fixture(1, status="Ended")
        await add_fixture(2, start_timestamp=NOW_TS - 5 * 3600, home="C")
        fake_source.enrich_errors[1] = BrowserSessionError("chromium failed to launch")

        report = await worker.run_cycle()

        assert any(e.startswith("enrich") for e in report.errors)
        assert report.next_delay_seconds == 60
        assert ("enrich", 2) not in fake_source.calls
        assert (await store.get_fixture(1)).enrichment_attempts == 0

    @pytest.mark.asyncio
    async def test_browser_failure_during_discovery_ends_cycle(self, worker, fake_source, add_fixture):
        await add_fixture(1, ProcessingStatus.ENRICHED, status="Ended")
        fake_source.round_errors[LEAGUE.tournament_id] = BrowserSessionError("chromium failed to launch")

        report = await worker.run_cycle()

        assert report.errors and report.errors[0].startswith("rounds")
        assert fake_source.called("live") == []
        assert report.next_delay_seconds == 60

        del fake_source.round_errors[LEAGUE.tournament_id]
        report = await worker.run_cycle()

        assert report.rounds_checked is True
        assert len(fake_source.called("round")) == 2

    @pytest.mark.asyncio
    async def test_standings_failure_reported(self, worker, fake_source, add_fixture):
        await add_fixture(1, status="Ended")
        fake_source.bundles[1] = _ended(1)

        async def broken(competition):
            raise SourceError("HTTP 500")

        fake_source.get_standings = broken

        report = await worker.run_cycle()

        assert report.enriched_ids == [1]
        assert report.standings_synced == []
        assert any("standings" in e for e in report.errors)

    @pytest.mark.asyncio
    async def test_stop_requested_before_cycle(self, worker, fake_source):
        stop = asyncio.Event()
        stop.set()

        report = await worker.run_cycle(stop)

        assert report.cancelled
        assert fake_source.calls == []


class TestCycleReport:

    def test_idle_definition(self):
        assert CycleReport().idle
        assert not CycleReport(live_count=1).idle
        assert not CycleReport(post_game_enriched=1).idle
        assert CycleReport(post_game_processed=1).idle
        assert not CycleReport(errors=["live_sync: boom"]).idle
