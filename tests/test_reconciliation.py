"""Tests for zombie fixture cleanup."""

import pytest
from sqlalchemy import select

from sofa_worker.etl.base import EnrichmentBundle, IncidentData, StatisticItemData
from sofa_worker.models import FixtureIncident, FixtureStatistic, ProcessingStatus
from sofa_worker.services.reconciliation import ReconciliationReconciler

from conftest import LEAGUE, make_event


@pytest.fixture
def reconciler(store):
    return ReconciliationReconciler(store)


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_postponed_duplicate_with_live_sibling_deleted(self, store, reconciler, add_fixture):
        """Fixture 100 postponed, re-issued as 200 and now being played."""
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed", round=5)
        await add_fixture(200, ProcessingStatus.IN_PROGRESS, status="1st half", round=5)

        assert await reconciler.run() == [100]
        assert await store.get_fixture(100) is None
        assert await store.get_fixture(200) is not None

    @pytest.mark.asyncio
    async def test_children_deleted_with_zombie(self, store, reconciler, add_fixture):
        await add_fixture(100, status="Ended")
        await store.apply_enrichment(100, EnrichmentBundle(
            event=make_event(100, status="Cancelled"),
            statistics=[StatisticItemData(period="ALL", name="Corners", home_value="1", away_value="2")],
            incidents=[IncidentData(incident_type="period", time=45)],
        ))
        assert (await store.get_fixture(100)).processing_status == ProcessingStatus.CANCELLED
        await add_fixture(200, ProcessingStatus.ENRICHED, status="Ended")

        assert await reconciler.run() == [100]
        async with store.session() as session:
            assert (await session.execute(select(FixtureStatistic))).scalars().all() == []
            assert (await session.execute(select(FixtureIncident))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_lone_postponed_fixture_kept(self, store, reconciler, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed")
        assert await reconciler.run() == []
        assert await store.get_fixture(100) is not None

    @pytest.mark.asyncio
    async def test_two_adverse_rows_both_kept(self, store, reconciler, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed")
        await add_fixture(200, ProcessingStatus.CANCELLED, status="Cancelled")
        assert await reconciler.run() == []

    @pytest.mark.asyncio
    async def test_sibling_in_error_does_not_count(self, reconciler, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed")
        await add_fixture(200, ProcessingStatus.ERROR, status="Ended")
        assert await reconciler.run() == []

    @pytest.mark.asyncio
    async def test_different_pairing_or_round_not_matched(self, reconciler, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed", round=5)
        await add_fixture(200, ProcessingStatus.PENDING, round=6)
        await add_fixture(300, ProcessingStatus.PENDING, round=5, home="Club B", away="Club A")
        await add_fixture(400, ProcessingStatus.PENDING, round=5, season_id=LEAGUE.season_id + 1)
        assert await reconciler.run() == []

    @pytest.mark.asyncio
    async def test_round_state_refreshed(self, store, reconciler, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed", round=5)
        await add_fixture(200, ProcessingStatus.ENRICHED, status="Ended", round=5)
        await store.refresh_round_state(LEAGUE.tournament_id, LEAGUE.season_id, 5)

        await reconciler.run()

        state = await store.get_round_state(LEAGUE.tournament_id, LEAGUE.season_id, 5)
        assert state.total_matches == 1
        assert state.is_fully_processed is True

    @pytest.mark.asyncio
    async def test_idempotent(self, reconciler, add_fixture):
        await add_fixture(100, ProcessingStatus.POSTPONED, status="Postponed")
        await add_fixture(200, ProcessingStatus.PENDING)
        assert await reconciler.run() == [100]
        assert await reconciler.run() == []
