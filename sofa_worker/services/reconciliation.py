"""
Zombie fixture cleanup.

The source sometimes re-issues a postponed fixture under a new event ID once
it is rescheduled, leaving the old ID behind as debris. A Postponed/Cancelled
row is deleted only when another row for the same (tournament, season, round,
home team, away team) exists in Pending/InProgress/Enriched, so the last row
of a pairing is never removed.
"""

import logging

from sqlalchemy import delete, exists, select
from sqlalchemy.orm import aliased

from sofa_worker.models import (
    VALID_SIBLING_STATUSES,
    Fixture,
    FixtureIncident,
    FixtureStatistic,
    ProcessingStatus,
)
from sofa_worker.services.store import MatchStateStore
from sofa_worker.telemetry import record_zombies_deleted

logger = logging.getLogger(__name__)

ADVERSE_STATUSES = (ProcessingStatus.POSTPONED, ProcessingStatus.CANCELLED)


class ReconciliationReconciler:
    """Set-based anti-duplication pass, safe to run every cycle."""

    def __init__(self, store: MatchStateStore):
        self._store = store

    async def run(self) -> list[int]:
        """Delete zombie fixtures and their children. Returns the deleted IDs."""
        zombie = aliased(Fixture)
        sibling = aliased(Fixture)

        has_valid_sibling = exists().where(
            sibling.tournament_id == zombie.tournament_id,
            sibling.season_id == zombie.season_id,
            sibling.round == zombie.round,
            sibling.home_team == zombie.home_team,
            sibling.away_team == zombie.away_team,
            sibling.id != zombie.id,
            sibling.processing_status.in_(list(VALID_SIBLING_STATUSES)),
        )

        async with self._store.session() as session:
            result = await session.execute(
                select(zombie.id, zombie.tournament_id, zombie.season_id, zombie.round)
                .where(zombie.processing_status.in_(ADVERSE_STATUSES), has_valid_sibling)
            )
            rows = result.all()
            if not rows:
                return []

            ids = [row.id for row in rows]
            await session.execute(delete(FixtureStatistic).where(FixtureStatistic.fixture_id.in_(ids)))
            await session.execute(delete(FixtureIncident).where(FixtureIncident.fixture_id.in_(ids)))
            await session.execute(delete(Fixture).where(Fixture.id.in_(ids)))
            await session.flush()

            await self._store.refresh_round_states(
                ((row.tournament_id, row.season_id, row.round) for row in rows),
                session,
            )
            await session.commit()

        record_zombies_deleted(len(ids))
        logger.info(f"[ZOMBIE] Deleted {len(ids)} stale duplicate fixtures: {ids}")
        return ids
