"""
Round progression: decide per tournament whether the next round/phase can be fetched.

League tournaments advance one numbered round at a time. A round is resolved
when every fixture in it has a terminal ProcessingStatus (postponed and
cancelled count as resolved for progression).

Cup tournaments run the same logic over their league-phase round range, then
walk an ordered list of knockout phases, fetching the next phase only after
the previous one is resolved.

The source reuses one round ID for a league-phase round and a knockout phase
(Champions League round 5 / round of 16). Rows fetched for a knockout phase
carry its slug; untagged rows with a colliding ID are split by comparing their
kick-off with the latest kick-off of the phase that precedes the knockout
phase. The boundary is empirical, so every unresolved case is logged.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from sofa_worker.etl.base import BrowserSessionError, EventData, FixtureSource
from sofa_worker.etl.competitions import Competition, TournamentRegistry
from sofa_worker.models import TERMINAL_STATUSES, Fixture
from sofa_worker.services.store import MatchStateStore
from sofa_worker.telemetry import capture_exception, record_round_fetched

logger = logging.getLogger(__name__)


@dataclass
class RoundAction:
    """One fetch decided by the scheduler."""

    tournament_id: int
    round: int
    kind: str  # "league", "knockout", "bootstrap"
    label: str
    inserted: int = 0
    locked: bool = False


@dataclass
class CupClassification:
    """Fixtures of a cup tournament split into league-phase rounds and knockout phases."""

    league: dict[int, list[Fixture]] = field(default_factory=dict)
    phases: dict[str, list[Fixture]] = field(default_factory=dict)
    ambiguous: list[Fixture] = field(default_factory=list)


def is_round_resolved(fixtures: Iterable[Fixture]) -> bool:
    """True when the round has fixtures and all of them are terminal."""
    fixtures = list(fixtures)
    return bool(fixtures) and all(f.processing_status in TERMINAL_STATUSES for f in fixtures)


def classify_cup_fixtures(competition: Competition, fixtures: Iterable[Fixture]) -> CupClassification:
    """Assign every fixture of a cup tournament to a league round or a knockout phase."""
    first, last = competition.first_round, competition.last_league_round
    phases_by_round = {p.round_id: p for p in competition.knockout_phases}
    colliding = {p.round_id for p in competition.knockout_phases if first <= p.round_id <= last}

    league: dict[int, list[Fixture]] = defaultdict(list)
    phases: dict[str, list[Fixture]] = defaultdict(list)
    unresolved: list[Fixture] = []

    for fixture in fixtures:
        if fixture.round_slug and competition.phase_index(fixture.round_slug) is not None:
            phases[fixture.round_slug].append(fixture)
        elif fixture.round in colliding:
            unresolved.append(fixture)
        elif fixture.round in phases_by_round:
            phases[phases_by_round[fixture.round].slug].append(fixture)
        elif first <= fixture.round <= last:
            league[fixture.round].append(fixture)
        else:
            logger.debug(
                f"[ROUNDS] {competition.name}: fixture {fixture.id} has unknown round {fixture.round}"
            )

    ambiguous: list[Fixture] = []
    for fixture in unresolved:
        phase = phases_by_round[fixture.round]
        index = competition.phase_index(phase.slug)
        if index == 0:
            preceding = [f for rows in league.values() for f in rows]
        else:
            preceding = phases.get(competition.knockout_phases[index - 1].slug, [])

        if preceding:
            boundary = max(f.start_timestamp for f in preceding)
            if fixture.start_timestamp > boundary:
                phases[phase.slug].append(fixture)
            else:
                league[fixture.round].append(fixture)
        else:
            # No timestamp boundary yet: default to the league phase
            ambiguous.append(fixture)
            league[fixture.round].append(fixture)

    if ambiguous:
        knockout_started = any(phases.values())
        log = logger.warning if knockout_started else logger.debug
        log(
            f"[ROUNDS] {competition.name}: {len(ambiguous)} fixtures with a shared round id "
            f"could not be placed by timestamp, treated as league phase"
        )

    return CupClassification(league=dict(league), phases=dict(phases), ambiguous=ambiguous)


class RoundScheduler:
    """Fetches the next round/phase of each registered tournament when it is due."""

    def __init__(
        self,
        store: MatchStateStore,
        source: FixtureSource,
        registry: TournamentRegistry,
        instance_id: str,
        interval_hours: float = 6.0,
        bootstrap_enabled: bool = True,
        tournament_pause_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._source = source
        self._registry = registry
        self._instance_id = instance_id
        self._interval_seconds = interval_hours * 3600
        self._bootstrap_enabled = bootstrap_enabled
        self._pause = tournament_pause_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_run: Optional[float] = None

    def is_due(self) -> bool:
        if self._last_run is None:
            return True
        return self._clock() - self._last_run >= self._interval_seconds

    async def run_if_due(self, stop_event: Optional[asyncio.Event] = None) -> Optional[list[RoundAction]]:
        """Run discovery at most once per interval. Returns None when skipped.

        The interval only starts once a run completes, so a run aborted by the
        browser is retried on the next call.
        """
        if not self.is_due():
            return None
        started = self._clock()
        actions = await self.run(stop_event)
        self._last_run = started
        return actions

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> list[RoundAction]:
        """Check every tournament; one tournament failing never stops the others.

        A BrowserSessionError propagates: without a browser no tournament can be checked.
        """
        actions: list[RoundAction] = []
        for index, competition in enumerate(self._registry):
            if stop_event is not None and stop_event.is_set():
                break
            if index > 0 and self._pause > 0:
                await self._sleep(self._pause)
            try:
                action = await self.process_competition(competition)
            except BrowserSessionError:
                raise
            except Exception as e:
                logger.error(f"[ROUNDS] {competition.name} failed: {e}")
                capture_exception(e, job_id="rounds", tournament=competition.key)
                continue
            if action is not None:
                actions.append(action)

        fetched = [a for a in actions if a.inserted]
        logger.info(
            f"[ROUNDS] Discovery complete: {len(actions)} fetches, "
            f"{sum(a.inserted for a in fetched)} fixtures inserted"
        )
        return actions

    async def process_competition(self, competition: Competition) -> Optional[RoundAction]:
        fixtures = await self._store.list_tournament_rows(competition.tournament_id, competition.season_id)
        if not fixtures:
            return await self._bootstrap(competition)
        if competition.is_cup:
            return await self._process_cup(competition, fixtures)
        return await self._process_league(competition, fixtures)

    # ─── League ───────────────────────────────────────────────────────────────

    async def _process_league(self, competition: Competition, fixtures: list[Fixture]) -> Optional[RoundAction]:
        rounds: dict[int, list[Fixture]] = defaultdict(list)
        for fixture in fixtures:
            rounds[fixture.round].append(fixture)

        current = max(rounds)
        return await self._advance_league(competition, rounds, current, competition.total_rounds)

    async def _advance_league(
        self,
        competition: Competition,
        rounds: dict[int, list[Fixture]],
        current: int,
        last_round: int,
    ) -> Optional[RoundAction]:
        if not is_round_resolved(rounds[current]):
            logger.debug(f"[ROUNDS] {competition.name}: round {current} still open")
            return None

        next_round = current + 1
        if next_round > last_round:
            logger.debug(f"[ROUNDS] {competition.name}: round {current} was the last league round")
            return None
        if rounds.get(next_round):
            return None

        return await self._fetch(
            competition,
            next_round,
            kind="league",
            label=f"round {next_round}",
            fetcher=lambda: self._source.get_round_matches(competition, next_round),
        )

    # ─── Cup ──────────────────────────────────────────────────────────────────

    async def _process_cup(self, competition: Competition, fixtures: list[Fixture]) -> Optional[RoundAction]:
        classified = classify_cup_fixtures(competition, fixtures)
        last_league = competition.last_league_round

        if classified.league:
            current = max(classified.league)
            if current < last_league:
                return await self._advance_league(competition, classified.league, current, last_league)
            if not is_round_resolved(classified.league[current]):
                logger.debug(f"[ROUNDS] {competition.name}: league phase round {current} still open")
                return None

        for phase in competition.knockout_phases:
            rows = classified.phases.get(phase.slug, [])
            if not rows:
                return await self._fetch(
                    competition,
                    phase.round_id,
                    kind="knockout",
                    label=phase.name,
                    fetcher=lambda phase=phase: self._source.get_knockout_matches(competition, phase),
                )
            if not is_round_resolved(rows):
                logger.debug(f"[ROUNDS] {competition.name}: {phase.name} still open")
                return None

        logger.debug(f"[ROUNDS] {competition.name}: all knockout phases fetched and resolved")
        return None

    # ─── Fetch ────────────────────────────────────────────────────────────────

    async def _bootstrap(self, competition: Competition) -> Optional[RoundAction]:
        if not self._bootstrap_enabled:
            logger.warning(f"[ROUNDS] {competition.name}: no local fixtures and bootstrap disabled")
            return None
        first = competition.first_round
        logger.info(f"[ROUNDS] {competition.name}: no local fixtures, bootstrapping round {first}")
        return await self._fetch(
            competition,
            first,
            kind="bootstrap",
            label=f"round {first}",
            fetcher=lambda: self._source.get_round_matches(competition, first),
        )

    async def _fetch(
        self,
        competition: Competition,
        round_number: int,
        kind: str,
        label: str,
        fetcher: Callable[[], Awaitable[list[EventData]]],
    ) -> RoundAction:
        action = RoundAction(
            tournament_id=competition.tournament_id, round=round_number, kind=kind, label=label
        )
        acquired = await self._store.acquire_round_lock(
            competition.tournament_id, competition.season_id, round_number, self._instance_id
        )
        if not acquired:
            action.locked = True
            return action

        error = None
        try:
            events = await fetcher()
            if not events:
                logger.warning(f"[ROUNDS] {competition.name} {label}: not published yet")
                return action
            action.inserted = await self._store.insert_discovered_fixtures(events)
            record_round_fetched(kind)
            logger.info(f"[ROUNDS] {competition.name} {label}: {action.inserted} fixtures inserted")
            return action
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            raise
        finally:
            await self._store.release_round_lock(
                competition.tournament_id,
                competition.season_id,
                round_number,
                self._instance_id,
                error=error,
            )
