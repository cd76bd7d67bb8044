"""
MatchStateStore: persisted fixture state and the queries the worker needs.

Invariants enforced here:
- statistics and incidents are replaced wholesale (delete-then-insert) in the
  same transaction as the fixture update
- enrichment_attempts saturates at the configured cap
- one commit per fixture, never one per batch
- RoundState.is_fully_processed == (enriched + cancelled == total)
- the round soft-lock is taken with a conditional UPDATE so two instances
  cannot both win it
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from sofa_worker.database import get_session_with_retry
from sofa_worker.etl.base import (
    FINISHED_STATUSES,
    NOT_STARTED_STATUS,
    POSTPONED_STATUS,
    EnrichmentBundle,
    EventData,
    StandingRowData,
    StatusKind,
    classify_status,
)
from sofa_worker.models import (
    TERMINAL_STATUSES,
    Fixture,
    FixtureIncident,
    FixtureStatistic,
    ProcessingStatus,
    RoundState,
    Standing,
    StandingPromotion,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000

# Never picked up again by automatic retry
SETTLED_STATUSES = TERMINAL_STATUSES | {ProcessingStatus.ERROR, ProcessingStatus.PARTIAL_DATA}


def initial_processing_status(kind: StatusKind) -> ProcessingStatus:
    """ProcessingStatus for a fixture seen for the first time."""
    if kind is StatusKind.LIVE:
        return ProcessingStatus.IN_PROGRESS
    if kind is StatusKind.POSTPONED:
        return ProcessingStatus.POSTPONED
    if kind is StatusKind.CANCELLED:
        return ProcessingStatus.CANCELLED
    return ProcessingStatus.PENDING


def resolve_processing_status(kind: StatusKind, attempts: int, max_attempts: int) -> ProcessingStatus:
    """ProcessingStatus after a successful enrichment fetch."""
    if kind is StatusKind.FINISHED:
        return ProcessingStatus.ENRICHED
    if kind is StatusKind.POSTPONED:
        return ProcessingStatus.POSTPONED
    if kind is StatusKind.CANCELLED:
        return ProcessingStatus.CANCELLED
    if attempts >= max_attempts:
        return ProcessingStatus.PARTIAL_DATA
    return ProcessingStatus.PENDING


@dataclass
class LiveSyncResult:
    """What phase 3 changed."""

    updated: int = 0
    inserted: int = 0
    finished_ids: list[int] = field(default_factory=list)
    live_ids: set[int] = field(default_factory=set)


@dataclass
class EnrichmentResult:
    """Outcome of persisting one enrichment bundle."""

    fixture_id: int
    tournament_id: int
    season_id: int
    processing_status: ProcessingStatus
    source_status: str
    statistics: int = 0
    incidents: int = 0


class MatchStateStore:
    """Persistence operations over fixtures, rounds and standings."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = 3,
        lock_timeout_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.lock_timeout = timedelta(minutes=lock_timeout_minutes)
        self._clock = clock

    def session(self):
        """Session context with connection retry, for callers composing their own queries."""
        return get_session_with_retry(self._session_factory)

    # ─── Discovery ────────────────────────────────────────────────────────────

    async def insert_discovered_fixtures(self, events: Iterable[EventData]) -> int:
        """Insert fixtures not yet known. Existing rows keep their processing state."""
        inserted = 0
        rounds: set[tuple[int, int, int]] = set()
        seen: set[int] = set()

        async with self.session() as session:
            for event in events:
                if event.tournament_id is None or event.season_id is None or event.round is None:
                    logger.debug(f"[STORE] Skipping event {event.id} without tournament/season/round")
                    continue

                if event.id in seen:
                    continue
                seen.add(event.id)

                existing = await session.get(Fixture, event.id)
                if existing is not None:
                    if event.round_slug and not existing.round_slug:
                        existing.round_slug = event.round_slug
                    continue

                session.add(self._new_fixture(event))
                rounds.add((event.tournament_id, event.season_id, event.round))
                inserted += 1

            await session.flush()
            for tournament_id, season_id, round_number in rounds:
                await self._refresh_round_state(session, tournament_id, season_id, round_number)
            await session.commit()

        if inserted:
            logger.info(f"[STORE] Inserted {inserted} new fixtures")
        return inserted

    def _new_fixture(self, event: EventData) -> Fixture:
        now = self._clock()
        return Fixture(
            id=event.id,
            tournament_id=event.tournament_id,
            season_id=event.season_id,
            round=event.round,
            round_slug=event.round_slug,
            home_team_id=event.home_team_id,
            home_team=event.home_team,
            away_team_id=event.away_team_id,
            away_team=event.away_team,
            home_score=event.home_score,
            away_score=event.away_score,
            status=event.status,
            status_type=event.status_type,
            start_timestamp=event.start_timestamp,
            processing_status=initial_processing_status(event.kind),
            created_at=now,
            updated_at=now,
        )

    async def get_fixture(self, fixture_id: int) -> Optional[Fixture]:
        async with self.session() as session:
            return await session.get(Fixture, fixture_id)

    async def list_tournament_rows(self, tournament_id: int, season_id: int) -> list[Fixture]:
        async with self.session() as session:
            result = await session.execute(
                select(Fixture)
                .where(Fixture.tournament_id == tournament_id, Fixture.season_id == season_id)
                .order_by(Fixture.start_timestamp)
            )
            return list(result.scalars().all())

    # ─── Live sync ────────────────────────────────────────────────────────────

    async def apply_live_updates(self, events: list[EventData]) -> LiveSyncResult:
        """Update known fixtures from the live feed and insert unknown ones with a round."""
        outcome = LiveSyncResult(live_ids={e.id for e in events})
        if not events:
            return outcome

        async with self.session() as session:
            result = await session.execute(
                select(Fixture).where(Fixture.id.in_([e.id for e in events]))
            )
            known = {f.id: f for f in result.scalars().all()}
            new_rounds: set[tuple[int, int, int]] = set()
            now = self._clock()

            for event in events:
                fixture = known.get(event.id)
                if fixture is None:
                    if self._can_insert_from_live(event):
                        fixture = self._new_fixture(event)
                        session.add(fixture)
                        known[event.id] = fixture
                        new_rounds.add((event.tournament_id, event.season_id, event.round))
                        outcome.inserted += 1
                    continue

                was_finished = fixture.status in FINISHED_STATUSES
                fixture.home_score = event.home_score
                fixture.away_score = event.away_score
                fixture.status = event.status
                fixture.status_type = event.status_type
                if event.start_timestamp:
                    fixture.start_timestamp = event.start_timestamp

                if event.kind is StatusKind.FINISHED:
                    if not was_finished or fixture.processing_status == ProcessingStatus.IN_PROGRESS:
                        # Hand-off to post-game enrichment with a fresh attempt budget
                        fixture.processing_status = ProcessingStatus.PENDING
                        fixture.enrichment_attempts = 0
                        outcome.finished_ids.append(fixture.id)
                else:
                    fixture.processing_status = ProcessingStatus.IN_PROGRESS

                fixture.updated_at = now
                outcome.updated += 1

            if new_rounds:
                await session.flush()
                await self.refresh_round_states(new_rounds, session)
            await session.commit()

        if outcome.inserted:
            logger.info(f"[LIVE_SYNC] Inserted {outcome.inserted} fixtures first seen in the live feed")
        return outcome

    @staticmethod
    def _can_insert_from_live(event: EventData) -> bool:
        return (
            event.round is not None
            and event.tournament_id is not None
            and event.season_id is not None
        )

    async def list_in_progress(self) -> list[Fixture]:
        """Fixtures the store believes are being played right now and may still be retried."""
        async with self.session() as session:
            result = await session.execute(
                select(Fixture)
                .where(
                    or_(
                        Fixture.processing_status == ProcessingStatus.IN_PROGRESS,
                        and_(
                            Fixture.status_type == "inprogress",
                            Fixture.processing_status.notin_(list(SETTLED_STATUSES)),
                        ),
                    ),
                    Fixture.enrichment_attempts < self.max_attempts,
                )
                .order_by(Fixture.start_timestamp)
            )
            return list(result.scalars().all())

    # ─── Enrichment selection ─────────────────────────────────────────────────

    async def select_pending_enrichment(self, limit: int) -> list[Fixture]:
        """Finished fixtures awaiting enrichment, oldest kick-off first."""
        async with self.session() as session:
            result = await session.execute(
                select(Fixture)
                .where(
                    Fixture.status.in_(FINISHED_STATUSES),
                    Fixture.processing_status == ProcessingStatus.PENDING,
                    Fixture.enrichment_attempts < self.max_attempts,
                )
                .order_by(Fixture.start_timestamp)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def select_limbo(self, cutoff_timestamp: int, limit: int) -> list[Fixture]:
        """Not-started/postponed fixtures whose kick-off is older than the cutoff."""
        async with self.session() as session:
            result = await session.execute(
                select(Fixture)
                .where(
                    Fixture.status.in_([NOT_STARTED_STATUS, POSTPONED_STATUS]),
                    Fixture.start_timestamp < cutoff_timestamp,
                    Fixture.processing_status.notin_(list(TERMINAL_STATUSES)),
                    Fixture.enrichment_attempts < self.max_attempts,
                )
                .order_by(Fixture.start_timestamp)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ─── Enrichment writes ────────────────────────────────────────────────────

    async def apply_enrichment(self, fixture_id: int, bundle: EnrichmentBundle) -> Optional[EnrichmentResult]:
        """Persist one enrichment bundle and finalise the processing status."""
        async with self.session() as session:
            fixture = await session.get(Fixture, fixture_id)
            if fixture is None:
                logger.warning(f"[STORE] Fixture {fixture_id} vanished before enrichment could be saved")
                return None

            now = self._clock()
            fixture.enrichment_attempts = min(fixture.enrichment_attempts + 1, self.max_attempts)
            fixture.last_enrichment_attempt = now
            fixture.updated_at = now

            event = bundle.event
            if event is not None:
                fixture.home_score = event.home_score
                fixture.away_score = event.away_score
                fixture.status = event.status
                fixture.status_type = event.status_type
                if event.start_timestamp:
                    fixture.start_timestamp = event.start_timestamp
                fixture.stadium = event.stadium or fixture.stadium
                fixture.referee = event.referee or fixture.referee
                if event.attendance is not None:
                    fixture.attendance = event.attendance
                fixture.last_enrichment_error = None
            else:
                fixture.last_enrichment_error = "Event details not available"

            await session.execute(delete(FixtureStatistic).where(FixtureStatistic.fixture_id == fixture_id))
            await session.execute(delete(FixtureIncident).where(FixtureIncident.fixture_id == fixture_id))
            for item in bundle.statistics:
                session.add(FixtureStatistic(
                    fixture_id=fixture_id,
                    period=item.period,
                    group_name=item.group,
                    name=item.name,
                    home_value=item.home_value,
                    away_value=item.away_value,
                    home_numeric=item.home_numeric,
                    away_numeric=item.away_numeric,
                    compare_code=item.compare_code,
                ))
            for sequence, incident in enumerate(bundle.incidents):
                session.add(FixtureIncident(
                    fixture_id=fixture_id,
                    sequence=sequence,
                    incident_type=incident.incident_type,
                    incident_class=incident.incident_class,
                    time=incident.time,
                    added_time=incident.added_time,
                    is_home=incident.is_home,
                    player_name=incident.player_name,
                    assist_name=incident.assist_name,
                ))

            kind = classify_status(fixture.status, fixture.status_type)
            fixture.processing_status = resolve_processing_status(
                kind, fixture.enrichment_attempts, self.max_attempts
            )

            await session.flush()
            await self._refresh_round_state(session, fixture.tournament_id, fixture.season_id, fixture.round)
            await session.commit()

            return EnrichmentResult(
                fixture_id=fixture_id,
                tournament_id=fixture.tournament_id,
                season_id=fixture.season_id,
                processing_status=fixture.processing_status,
                source_status=fixture.status,
                statistics=len(bundle.statistics),
                incidents=len(bundle.incidents),
            )

    async def record_enrichment_failure(self, fixture_id: int, error: BaseException) -> Optional[ProcessingStatus]:
        """Count a failed attempt; at the cap the fixture moves to Error."""
        async with self.session() as session:
            fixture = await session.get(Fixture, fixture_id)
            if fixture is None:
                return None

            now = self._clock()
            fixture.enrichment_attempts = min(fixture.enrichment_attempts + 1, self.max_attempts)
            fixture.last_enrichment_attempt = now
            fixture.last_enrichment_error = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
            fixture.updated_at = now
            if fixture.enrichment_attempts >= self.max_attempts:
                fixture.processing_status = ProcessingStatus.ERROR

            await session.flush()
            await self._refresh_round_state(session, fixture.tournament_id, fixture.season_id, fixture.round)
            await session.commit()
            return fixture.processing_status

    # ─── Standings ────────────────────────────────────────────────────────────

    async def replace_standings(self, tournament_id: int, season_id: int, rows: list[StandingRowData]) -> int:
        """Rebuild the table from a snapshot; promotions are replaced wholesale."""
        if not rows:
            return 0

        async with self.session() as session:
            result = await session.execute(
                select(Standing).where(
                    Standing.tournament_id == tournament_id,
                    Standing.season_id == season_id,
                )
            )
            existing = {s.team_id: s for s in result.scalars().all()}
            if existing:
                await session.execute(
                    delete(StandingPromotion).where(
                        StandingPromotion.standing_id.in_([s.id for s in existing.values()])
                    )
                )

            now = self._clock()
            seen: dict[int, Standing] = {}
            for row in rows:
                standing = existing.get(row.team_id)
                if standing is None:
                    standing = Standing(
                        tournament_id=tournament_id,
                        season_id=season_id,
                        team_id=row.team_id,
                        team_name=row.team_name,
                        position=row.position,
                    )
                    session.add(standing)
                standing.team_name = row.team_name
                standing.position = row.position
                standing.matches = row.matches
                standing.wins = row.wins
                standing.draws = row.draws
                standing.losses = row.losses
                standing.goals_for = row.goals_for
                standing.goals_against = row.goals_against
                standing.goal_difference = row.goal_difference
                standing.points = row.points
                standing.updated_at = now
                seen[row.team_id] = standing

            stale = [s for team_id, s in existing.items() if team_id not in seen]
            for standing in stale:
                await session.delete(standing)

            await session.flush()
            for row in rows:
                if row.promotion_text:
                    session.add(StandingPromotion(
                        standing_id=seen[row.team_id].id,
                        promotion_id=row.promotion_id,
                        text=row.promotion_text,
                    ))
            await session.commit()

        return len(rows)

    async def list_standings(self, tournament_id: int, season_id: int) -> list[Standing]:
        async with self.session() as session:
            result = await session.execute(
                select(Standing)
                .where(Standing.tournament_id == tournament_id, Standing.season_id == season_id)
                .order_by(Standing.position)
            )
            return list(result.scalars().all())

    # ─── Round state ──────────────────────────────────────────────────────────

    async def refresh_round_state(self, tournament_id: int, season_id: int, round_number: int) -> RoundState:
        async with self.session() as session:
            state = await self._refresh_round_state(session, tournament_id, season_id, round_number)
            await session.commit()
            return state

    async def refresh_round_states(self, keys: Iterable[tuple[int, int, int]], session: AsyncSession) -> None:
        for tournament_id, season_id, round_number in set(keys):
            await self._refresh_round_state(session, tournament_id, season_id, round_number)

    async def _get_round_state(
        self, session: AsyncSession, tournament_id: int, season_id: int, round_number: int
    ) -> Optional[RoundState]:
        result = await session.execute(
            select(RoundState).where(
                RoundState.tournament_id == tournament_id,
                RoundState.season_id == season_id,
                RoundState.round == round_number,
            )
        )
        return result.scalars().first()

    async def _refresh_round_state(
        self, session: AsyncSession, tournament_id: int, season_id: int, round_number: int
    ) -> RoundState:
        result = await session.execute(
            select(Fixture.processing_status, func.count())
            .where(
                Fixture.tournament_id == tournament_id,
                Fixture.season_id == season_id,
                Fixture.round == round_number,
            )
            .group_by(Fixture.processing_status)
        )
        counts = {status: count for status, count in result.all()}

        state = await self._get_round_state(session, tournament_id, season_id, round_number)
        if state is None:
            state = RoundState(tournament_id=tournament_id, season_id=season_id, round=round_number)
            session.add(state)

        now = self._clock()
        state.total_matches = sum(counts.values())
        state.enriched_matches = counts.get(ProcessingStatus.ENRICHED, 0)
        state.postponed_matches = counts.get(ProcessingStatus.POSTPONED, 0)
        state.cancelled_matches = counts.get(ProcessingStatus.CANCELLED, 0)
        state.is_fully_processed = state.should_be_marked_complete()
        state.last_check = now
        if state.is_fully_processed:
            state.completed_at = state.completed_at or now
        else:
            state.completed_at = None
        return state

    async def get_round_state(self, tournament_id: int, season_id: int, round_number: int) -> Optional[RoundState]:
        async with self.session() as session:
            return await self._get_round_state(session, tournament_id, season_id, round_number)

    async def acquire_round_lock(self, tournament_id: int, season_id: int, round_number: int, holder: str) -> bool:
        """Take the soft lock unless another holder took it less than the timeout ago."""
        async with self.session() as session:
            if await self._get_round_state(session, tournament_id, season_id, round_number) is None:
                await self._refresh_round_state(session, tournament_id, season_id, round_number)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another instance created the row first
                    await session.rollback()

            now = self._clock()
            cutoff = now - self.lock_timeout
            result = await session.execute(
                update(RoundState)
                .where(
                    RoundState.tournament_id == tournament_id,
                    RoundState.season_id == season_id,
                    RoundState.round == round_number,
                    or_(
                        RoundState.locked_by.is_(None),
                        RoundState.locked_by == holder,
                        RoundState.locked_at.is_(None),
                        RoundState.locked_at < cutoff,
                    ),
                )
                .values(locked_by=holder, locked_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            acquired = result.rowcount == 1

        if not acquired:
            logger.info(
                f"[ROUNDS] Round {round_number} of tournament {tournament_id} is locked by another worker"
            )
        return acquired

    async def release_round_lock(
        self,
        tournament_id: int,
        season_id: int,
        round_number: int,
        holder: str,
        error: Optional[str] = None,
    ) -> None:
        """Release the lock if we hold it, recording a failure when `error` is given."""
        values = {"locked_by": None, "locked_at": None, "last_check": self._clock()}
        if error is not None:
            values["failed_attempts"] = RoundState.failed_attempts + 1
            values["last_error"] = error[:MAX_ERROR_LENGTH]

        async with self.session() as session:
            await session.execute(
                update(RoundState)
                .where(
                    RoundState.tournament_id == tournament_id,
                    RoundState.season_id == season_id,
                    RoundState.round == round_number,
                    RoundState.locked_by == holder,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    # ─── Reporting ────────────────────────────────────────────────────────────

    async def count_by_processing_status(self) -> dict[str, int]:
        async with self.session() as session:
            result = await session.execute(
                select(Fixture.processing_status, func.count()).group_by(Fixture.processing_status)
            )
            return {status.value: count for status, count in result.all()}
