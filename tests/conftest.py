"""Shared fixtures: in-memory SQLite store and a scripted fixture source."""

from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio

from sofa_worker.database import create_engine, create_session_factory, init_db
from sofa_worker.etl.base import (
    EnrichmentBundle,
    EventData,
    FixtureSource,
    StandingRowData,
)
from sofa_worker.etl.competitions import Competition, KnockoutPhase
from sofa_worker.models import Fixture, ProcessingStatus
from sofa_worker.services.store import MatchStateStore

NOW = datetime(2026, 3, 14, 18, 0, 0, tzinfo=timezone.utc)
NOW_TS = 1773511200  # NOW as unix seconds


class Clock:
    """Mutable clock for store lock tests."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeSource(FixtureSource):
    """Scripted source; every call is recorded in `calls`."""

    def __init__(self):
        self.live: list[EventData] = []
        self.live_error: Optional[Exception] = None
        self.rounds: dict[tuple[int, int], list[EventData]] = {}
        self.knockouts: dict[tuple[int, str], list[EventData]] = {}
        self.bundles: dict[int, EnrichmentBundle] = {}
        self.enrich_errors: dict[int, Exception] = {}
        self.standings: dict[int, list[StandingRowData]] = {}
        self.round_errors: dict[int, Exception] = {}
        self.calls: list[tuple] = []
        self.closed = 0

    async def get_live_matches(self):
        self.calls.append(("live",))
        if self.live_error is not None:
            raise self.live_error
        return list(self.live)

    async def get_round_matches(self, competition, round_number):
        self.calls.append(("round", competition.tournament_id, round_number))
        if competition.tournament_id in self.round_errors:
            raise self.round_errors[competition.tournament_id]
        return list(self.rounds.get((competition.tournament_id, round_number), []))

    async def get_knockout_matches(self, competition, phase):
        self.calls.append(("knockout", competition.tournament_id, phase.slug))
        return list(self.knockouts.get((competition.tournament_id, phase.slug), []))

    async def enrich_fixture(self, fixture_id):
        self.calls.append(("enrich", fixture_id))
        if fixture_id in self.enrich_errors:
            raise self.enrich_errors[fixture_id]
        return self.bundles.get(fixture_id, EnrichmentBundle(event=None))

    async def get_standings(self, competition):
        self.calls.append(("standings", competition.tournament_id))
        return list(self.standings.get(competition.tournament_id, []))

    async def close(self):
        self.closed += 1

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


LEAGUE = Competition(
    key="test-league",
    name="Test League",
    tournament_id=17,
    season_id=76986,
    total_rounds=3,
    web_slug="england/test-league",
)

CUP = Competition(
    key="test-cup",
    name="Test Cup",
    tournament_id=7,
    season_id=76953,
    total_rounds=13,
    web_slug="europe/test-cup",
    league_phase_rounds=(1, 8),
    knockout_phases=(
        KnockoutPhase(round_id=636, slug="playoff-round", name="Playoff Round"),
        KnockoutPhase(round_id=5, slug="round-of-16", name="Round of 16"),
        KnockoutPhase(round_id=27, slug="quarterfinals", name="Quarter Finals"),
        KnockoutPhase(round_id=28, slug="semifinals", name="Semi Finals"),
        KnockoutPhase(round_id=29, slug="final", name="Final"),
    ),
)


def make_event(
    event_id: int,
    status: str = "Not started",
    status_type: Optional[str] = None,
    tournament_id: int = LEAGUE.tournament_id,
    season_id: Optional[int] = LEAGUE.season_id,
    round: Optional[int] = 1,
    home: str = "Club A",
    away: str = "Club B",
    home_score: int = 0,
    away_score: int = 0,
    start_timestamp: int = NOW_TS - 7200,
    round_slug: Optional[str] = None,
) -> EventData:
    return EventData(
        id=event_id,
        tournament_id=tournament_id,
        season_id=season_id,
        round=round,
        round_slug=round_slug,
        home_team=home,
        away_team=away,
        home_score=home_score,
        away_score=away_score,
        status=status,
        status_type=status_type,
        start_timestamp=start_timestamp,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_engine("sqlite://")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(session_factory, clock):
    return MatchStateStore(session_factory, max_attempts=3, lock_timeout_minutes=30, clock=clock)


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def add_fixture(session_factory):
    """Insert a Fixture row directly, bypassing the store's status mapping."""

    async def _add(
        fixture_id: int,
        processing_status: ProcessingStatus = ProcessingStatus.PENDING,
        status: str = "Not started",
        tournament_id: int = LEAGUE.tournament_id,
        season_id: int = LEAGUE.season_id,
        round: int = 1,
        home: str = "Club A",
        away: str = "Club B",
        start_timestamp: int = NOW_TS - 7200,
        attempts: int = 0,
        round_slug: Optional[str] = None,
        status_type: Optional[str] = None,
    ) -> Fixture:
        fixture = Fixture(
            id=fixture_id,
            tournament_id=tournament_id,
            season_id=season_id,
            round=round,
            round_slug=round_slug,
            home_team=home,
            away_team=away,
            status=status,
            status_type=status_type,
            start_timestamp=start_timestamp,
            processing_status=processing_status,
            enrichment_attempts=attempts,
        )
        async with session_factory() as session:
            session.add(fixture)
            await session.commit()
        return fixture

    return _add
