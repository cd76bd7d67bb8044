"""
Enrichment worker: one cooperative cycle, phases strictly in order.

    1. reconcile   - delete zombie duplicates
    2. rounds      - round/phase discovery (rate-limited inside RoundScheduler)
    3. live_sync   - refresh scores/status from the live feed
    4. stuck_live  - force enrichment of in-progress fixtures missing from the feed
    5. enrich      - post-game enrichment of finished fixtures
    6. limbo       - recover fixtures whose kick-off passed long ago
    7. standings   - one table sync per tournament that got an enriched fixture

`run_cycle()` never raises for phase failures: it returns a CycleReport whose
`next_delay_seconds` is the idle interval when nothing was live and nothing
was enriched, and the active interval otherwise (including after errors).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sofa_worker.config import Settings
from sofa_worker.etl.base import BrowserSessionError, FixtureSource
from sofa_worker.etl.competitions import TournamentRegistry
from sofa_worker.models import Fixture, ProcessingStatus
from sofa_worker.services.reconciliation import ReconciliationReconciler
from sofa_worker.services.round_scheduler import RoundScheduler
from sofa_worker.services.store import EnrichmentResult, MatchStateStore
from sofa_worker.telemetry import (
    capture_exception,
    record_cycle,
    record_enrichment_outcome,
    record_job_run,
    set_live_fixtures,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerOptions:
    active_delay_seconds: float = 60.0
    idle_delay_seconds: float = 900.0
    inter_fixture_delay_seconds: float = 2.0
    enrichment_batch_size: int = 10
    limbo_batch_size: int = 3
    limbo_cutoff_hours: float = 3.0
    close_browser_when_idle: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerOptions":
        return cls(
            active_delay_seconds=settings.WORKER_ACTIVE_DELAY_SECONDS,
            idle_delay_seconds=settings.WORKER_IDLE_DELAY_SECONDS,
            inter_fixture_delay_seconds=settings.WORKER_INTER_FIXTURE_DELAY_SECONDS,
            enrichment_batch_size=settings.ENRICHMENT_BATCH_SIZE,
            limbo_batch_size=settings.LIMBO_BATCH_SIZE,
            limbo_cutoff_hours=settings.LIMBO_CUTOFF_HOURS,
            close_browser_when_idle=settings.WORKER_CLOSE_BROWSER_WHEN_IDLE,
        )


@dataclass
class CycleReport:
    """What one cycle did, and how long to wait before the next one."""

    zombies_deleted: int = 0
    rounds_checked: bool = False
    fixtures_discovered: int = 0
    live_sync_ok: bool = False
    live_count: int = 0
    live_ids: set[int] = field(default_factory=set)
    stuck_processed: int = 0
    post_game_processed: int = 0
    post_game_enriched: int = 0
    limbo_processed: int = 0
    enriched_ids: list[int] = field(default_factory=list)
    failed_ids: list[int] = field(default_factory=list)
    standings_synced: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: float = 0.0
    next_delay_seconds: float = 0.0

    @property
    def idle(self) -> bool:
        return self.live_count == 0 and self.post_game_enriched == 0 and not self.errors


class EnrichmentWorker:
    """Sequences reconciliation, discovery, live sync and enrichment every cycle."""

    def __init__(
        self,
        store: MatchStateStore,
        source: FixtureSource,
        registry: TournamentRegistry,
        reconciler: ReconciliationReconciler,
        round_scheduler: RoundScheduler,
        options: Optional[WorkerOptions] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._source = source
        self._registry = registry
        self._reconciler = reconciler
        self._round_scheduler = round_scheduler
        self._options = options or WorkerOptions()
        self._clock = clock
        self._sleep = sleep
        # (tournament_id, season_id) with a fixture enriched this cycle, in first-seen order
        self._touched: dict[tuple[int, int], None] = {}

    @property
    def options(self) -> WorkerOptions:
        return self._options

    # ─── Cycle ────────────────────────────────────────────────────────────────

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> CycleReport:
        start_time = time.time()
        report = CycleReport()
        self._touched = {}

        phases = [
            ("reconcile", self._phase_reconcile),
            ("rounds", self._phase_rounds),
            ("live_sync", self._phase_live_sync),
            ("stuck_live", self._phase_stuck_live),
            ("enrich", self._phase_post_game),
            ("limbo", self._phase_limbo),
            ("standings", self._phase_standings),
        ]

        for name, phase in phases:
            if self._stopped(stop_event):
                report.cancelled = True
                logger.info(f"[WORKER] Stop requested, leaving cycle before {name}")
                break

            phase_start = time.time()
            try:
                await phase(report, stop_event)
            except BrowserSessionError as e:
                # No session means no phase can make progress this cycle
                report.errors.append(f"{name}: {e}")
                logger.error(f"[WORKER] Browser unavailable during {name}, ending cycle: {e}")
                record_job_run(job=name, status="error", duration_ms=(time.time() - phase_start) * 1000)
                capture_exception(e, job_id=name)
                break
            except Exception as e:
                report.errors.append(f"{name}: {e}")
                logger.error(f"[WORKER] Phase {name} failed: {e}", exc_info=True)
                record_job_run(job=name, status="error", duration_ms=(time.time() - phase_start) * 1000)
                capture_exception(e, job_id=name)
                continue
            record_job_run(job=name, status="ok", duration_ms=(time.time() - phase_start) * 1000)

        if report.idle:
            report.next_delay_seconds = self._options.idle_delay_seconds
            if self._options.close_browser_when_idle:
                await self._close_source()
        else:
            report.next_delay_seconds = self._options.active_delay_seconds

        report.duration_ms = (time.time() - start_time) * 1000
        record_cycle(
            status="error" if report.errors else "ok",
            duration_ms=report.duration_ms,
            next_delay_seconds=report.next_delay_seconds,
        )
        logger.info(
            f"[WORKER] Cycle done in {report.duration_ms / 1000:.1f}s: live={report.live_count} "
            f"stuck={report.stuck_processed} post_game={report.post_game_processed} "
            f"limbo={report.limbo_processed} enriched={len(report.enriched_ids)} "
            f"failed={len(report.failed_ids)} zombies={report.zombies_deleted} "
            f"errors={len(report.errors)} -> next in {report.next_delay_seconds:.0f}s "
            f"({'idle' if report.idle else 'active'})"
        )
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Loop until `stop_event` is set, waiting the computed delay between cycles."""
        while not stop_event.is_set():
            report = await self.run_cycle(stop_event)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=report.next_delay_seconds)
            except asyncio.TimeoutError:
                pass
        await self._close_source()

    @staticmethod
    def _stopped(stop_event: Optional[asyncio.Event]) -> bool:
        return stop_event is not None and stop_event.is_set()

    async def _close_source(self) -> None:
        try:
            await self._source.close()
        except Exception as e:
            logger.warning(f"[WORKER] Error while closing the browser: {e}")

    # ─── Phases ───────────────────────────────────────────────────────────────

    async def _phase_reconcile(self, report: CycleReport, stop_event) -> None:
        report.zombies_deleted = len(await self._reconciler.run())

    async def _phase_rounds(self, report: CycleReport, stop_event) -> None:
        actions = await self._round_scheduler.run_if_due(stop_event)
        if actions is None:
            return
        report.rounds_checked = True
        report.fixtures_discovered = sum(a.inserted for a in actions)

    async def _phase_live_sync(self, report: CycleReport, stop_event) -> None:
        events = await self._source.get_live_matches()
        result = await self._store.apply_live_updates(events)

        report.live_sync_ok = True
        report.live_count = len(events)
        report.live_ids = result.live_ids
        set_live_fixtures(len(events))

        if events:
            logger.info(
                f"[LIVE_SYNC] {len(events)} live, {result.updated} updated, "
                f"{result.inserted} inserted, {len(result.finished_ids)} finished"
            )

    async def _phase_stuck_live(self, report: CycleReport, stop_event) -> None:
        if not report.live_sync_ok:
            logger.debug("[STUCK] Live feed unavailable this cycle, skipping stuck detection")
            return

        in_progress = await self._store.list_in_progress()
        stuck = [f for f in in_progress if f.id not in report.live_ids]
        if not stuck:
            return

        logger.info(f"[STUCK] {len(stuck)} in-progress fixtures missing from the live feed")
        report.stuck_processed = await self._process_batch(stuck, "STUCK", report, stop_event)

    async def _phase_post_game(self, report: CycleReport, stop_event) -> None:
        fixtures = await self._store.select_pending_enrichment(self._options.enrichment_batch_size)
        if not fixtures:
            return
        logger.info(f"[ENRICH] {len(fixtures)} finished fixtures awaiting enrichment")
        enriched_before = len(report.enriched_ids)
        report.post_game_processed = await self._process_batch(fixtures, "ENRICH", report, stop_event)
        report.post_game_enriched = len(report.enriched_ids) - enriched_before

    async def _phase_limbo(self, report: CycleReport, stop_event) -> None:
        cutoff = int(self._clock() - self._options.limbo_cutoff_hours * 3600)
        fixtures = await self._store.select_limbo(cutoff, self._options.limbo_batch_size)
        if not fixtures:
            return
        logger.info(f"[LIMBO] Recovering {len(fixtures)} fixtures")
        report.limbo_processed = await self._process_batch(fixtures, "LIMBO", report, stop_event)

    async def _phase_standings(self, report: CycleReport, stop_event) -> None:
        for tournament_id, season_id in list(self._touched):
            if self._stopped(stop_event):
                report.cancelled = True
                return
            competition = self._registry.get(tournament_id)
            if competition is None or competition.season_id != season_id:
                logger.debug(f"[STANDINGS] Tournament {tournament_id}/{season_id} not in registry")
                continue
            try:
                rows = await self._source.get_standings(competition)
                if not rows:
                    logger.warning(f"[STANDINGS] {competition.name}: no total table available")
                    continue
                await self._store.replace_standings(tournament_id, season_id, rows)
            except BrowserSessionError:
                raise
            except Exception as e:
                logger.error(f"[STANDINGS] {competition.name} sync failed: {e}")
                capture_exception(e, job_id="standings", tournament=competition.key)
                report.errors.append(f"standings {competition.key}: {e}")
                continue
            report.standings_synced.append(tournament_id)
            logger.info(f"[STANDINGS] {competition.name}: {len(rows)} rows synced")

    # ─── Per fixture ──────────────────────────────────────────────────────────

    async def _process_batch(
        self,
        fixtures: list[Fixture],
        tag: str,
        report: CycleReport,
        stop_event: Optional[asyncio.Event],
    ) -> int:
        """Enrich fixtures one by one; a failing fixture never stops its siblings."""
        processed = 0
        for index, fixture in enumerate(fixtures):
            if self._stopped(stop_event):
                report.cancelled = True
                break
            if index > 0 and self._options.inter_fixture_delay_seconds > 0:
                await self._sleep(self._options.inter_fixture_delay_seconds)

            processed += 1
            try:
                await self._enrich_one(fixture, tag, report)
            except BrowserSessionError:
                raise
            except Exception as e:
                logger.error(f"[{tag}] Fixture {fixture.id} could not be saved: {e}", exc_info=True)
                capture_exception(e, job_id=tag.lower(), fixture_id=fixture.id)
                report.failed_ids.append(fixture.id)
        return processed

    async def _enrich_one(self, fixture: Fixture, tag: str, report: CycleReport) -> Optional[EnrichmentResult]:
        label = f"{fixture.home_team} vs {fixture.away_team} ({fixture.id})"
        try:
            bundle = await self._source.enrich_fixture(fixture.id)
        except BrowserSessionError:
            raise
        except Exception as e:
            status = await self._store.record_enrichment_failure(fixture.id, e)
            record_enrichment_outcome("failed")
            report.failed_ids.append(fixture.id)
            logger.error(f"[{tag}] {label} fetch failed: {e} (now {status.value if status else 'gone'})")
            return None

        result = await self._store.apply_enrichment(fixture.id, bundle)
        if result is None:
            return None

        record_enrichment_outcome(result.processing_status.value.lower())
        if result.processing_status is ProcessingStatus.ENRICHED:
            report.enriched_ids.append(fixture.id)
            self._touched[(result.tournament_id, result.season_id)] = None
            if not bundle.statistics:
                logger.warning(f"[{tag}] {label} enriched without statistics")

        kickoff = datetime.fromtimestamp(fixture.start_timestamp, tz=timezone.utc)
        logger.info(
            f"[{tag}] {label} kick-off {kickoff:%Y-%m-%d %H:%M} -> {result.processing_status.value} "
            f"(status={result.source_status}, stats={result.statistics}, incidents={result.incidents})"
        )
        return result
