"""
Command line entry point.

Usage:
    sofa-worker run                            # scheduler loop until SIGINT/SIGTERM
    sofa-worker once                           # a single worker cycle
    sofa-worker init-db                        # create tables
    sofa-worker fetch-round laliga 12          # fetch and insert one league round
    sofa-worker fetch-round champions-league --phase round-of-16
    sofa-worker --tournaments laliga,serie-a sync-standings  # rebuild selected tables
    sofa-worker reconcile                      # zombie cleanup only
    sofa-worker status                         # fixture counts per processing status
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from sofa_worker.config import Settings, get_settings
from sofa_worker.database import close_db, get_session_factory, init_db
from sofa_worker.enrichment_worker import EnrichmentWorker, WorkerOptions
from sofa_worker.etl.competitions import DEFAULT_REGISTRY, Competition, TournamentRegistry
from sofa_worker.etl.sofascore_scraper import ScraperClient
from sofa_worker.scheduler import WorkerScheduler
from sofa_worker.services.reconciliation import ReconciliationReconciler
from sofa_worker.services.round_scheduler import RoundScheduler
from sofa_worker.services.store import MatchStateStore
from sofa_worker.telemetry import init_sentry, is_sentry_enabled, start_metrics_server

logger = logging.getLogger("sofa_worker")


@dataclass
class WorkerComponents:
    """Everything a worker process needs, wired once."""

    settings: Settings
    registry: TournamentRegistry
    store: MatchStateStore
    scraper: ScraperClient
    reconciler: ReconciliationReconciler
    round_scheduler: RoundScheduler
    worker: EnrichmentWorker


def build_components(settings: Settings, registry: TournamentRegistry = DEFAULT_REGISTRY) -> WorkerComponents:
    store = MatchStateStore(
        get_session_factory(),
        max_attempts=settings.ENRICHMENT_MAX_ATTEMPTS,
        lock_timeout_minutes=settings.ROUND_LOCK_TIMEOUT_MINUTES,
    )
    scraper = ScraperClient.from_settings(settings, registry)
    reconciler = ReconciliationReconciler(store)
    round_scheduler = RoundScheduler(
        store,
        scraper,
        registry,
        instance_id=settings.instance_id,
        interval_hours=settings.ROUND_DISCOVERY_INTERVAL_HOURS,
        bootstrap_enabled=settings.ROUND_BOOTSTRAP_ENABLED,
        tournament_pause_seconds=settings.ROUND_TOURNAMENT_PAUSE_SECONDS,
    )
    worker = EnrichmentWorker(
        store,
        scraper,
        registry,
        reconciler,
        round_scheduler,
        options=WorkerOptions.from_settings(settings),
    )
    return WorkerComponents(
        settings=settings,
        registry=registry,
        store=store,
        scraper=scraper,
        reconciler=reconciler,
        round_scheduler=round_scheduler,
        worker=worker,
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _split_keys(value: str) -> list[str]:
    return [key.strip() for key in value.split(",") if key.strip()]


def _select_registry(keys: Optional[list[str]]) -> TournamentRegistry:
    if not keys:
        return DEFAULT_REGISTRY
    registry = DEFAULT_REGISTRY.subset(keys)
    unknown = set(k.lower() for k in keys) - {c.key for c in registry}
    if unknown:
        raise SystemExit(f"Unknown tournaments: {', '.join(sorted(unknown))}")
    return registry


def _competition(key: str) -> Competition:
    competition = DEFAULT_REGISTRY.by_key(key)
    if competition is None:
        known = ", ".join(c.key for c in DEFAULT_REGISTRY)
        raise SystemExit(f"Unknown tournament '{key}'. Known: {known}")
    return competition


# ─── Commands ─────────────────────────────────────────────────────────────────


async def cmd_run(components: WorkerComponents) -> None:
    settings = components.settings
    runner = WorkerScheduler(components.worker, startup_delay_seconds=settings.WORKER_STARTUP_DELAY_SECONDS)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    logger.info(
        f"Worker {settings.instance_id} starting: {len(components.registry)} tournaments, "
        f"active={settings.WORKER_ACTIVE_DELAY_SECONDS}s idle={settings.WORKER_IDLE_DELAY_SECONDS}s "
        f"sentry={'on' if is_sentry_enabled() else 'off'}"
    )
    runner.start()
    try:
        await stop.wait()
        logger.info("Shutdown requested")
    finally:
        await runner.shutdown()


async def cmd_once(components: WorkerComponents) -> None:
    report = await components.worker.run_cycle()
    print(
        f"live={report.live_count} enriched={len(report.enriched_ids)} failed={len(report.failed_ids)} "
        f"zombies={report.zombies_deleted} discovered={report.fixtures_discovered} "
        f"standings={len(report.standings_synced)} errors={len(report.errors)} "
        f"next_delay={report.next_delay_seconds:.0f}s"
    )
    for error in report.errors:
        print(f"  error: {error}")


async def cmd_fetch_round(components: WorkerComponents, key: str, round_number: Optional[int], phase_slug: Optional[str]) -> None:
    competition = _competition(key)
    if phase_slug:
        index = competition.phase_index(phase_slug)
        if index is None:
            slugs = ", ".join(p.slug for p in competition.knockout_phases) or "none"
            raise SystemExit(f"{competition.name} has no phase '{phase_slug}'. Phases: {slugs}")
        events = await components.scraper.get_knockout_matches(competition, competition.knockout_phases[index])
    elif round_number is not None:
        events = await components.scraper.get_round_matches(competition, round_number)
    else:
        raise SystemExit("Give a round number or --phase")

    inserted = await components.store.insert_discovered_fixtures(events)
    print(f"{competition.name}: {len(events)} events fetched, {inserted} inserted")


async def cmd_sync_standings(components: WorkerComponents) -> None:
    for competition in components.registry:
        rows = await components.scraper.get_standings(competition)
        saved = await components.store.replace_standings(competition.tournament_id, competition.season_id, rows)
        print(f"{competition.name}: {saved} rows")


async def cmd_reconcile(components: WorkerComponents) -> None:
    deleted = await components.reconciler.run()
    print(f"Deleted {len(deleted)} zombie fixtures" + (f": {deleted}" if deleted else ""))


async def cmd_status(components: WorkerComponents) -> None:
    counts = await components.store.count_by_processing_status()
    if not counts:
        print("No fixtures stored")
        return
    for status, count in sorted(counts.items()):
        print(f"{status:<12} {count}")


# ─── Entry point ──────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sofa-worker", description="Fixture ingestion and enrichment worker")
    parser.add_argument("--headed", action="store_true", help="Run with visible browser (debug)")
    parser.add_argument(
        "--tournaments",
        type=_split_keys,
        metavar="KEY[,KEY...]",
        help="Comma-separated registry keys to restrict to (e.g. laliga,serie-a)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the worker loop until interrupted")
    sub.add_parser("once", help="Run a single worker cycle")
    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("reconcile", help="Delete zombie duplicate fixtures")
    sub.add_parser("status", help="Fixture counts per processing status")
    sub.add_parser("sync-standings", help="Rebuild standings for the selected tournaments")

    fetch = sub.add_parser("fetch-round", help="Fetch and insert one round or knockout phase")
    fetch.add_argument("tournament", help="Registry key, e.g. premier-league")
    fetch.add_argument("round", nargs="?", type=int, help="Round number")
    fetch.add_argument("--phase", help="Knockout phase slug, e.g. round-of-16")
    return parser


async def async_main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.headed:
        settings.BROWSER_HEADLESS = False
    configure_logging(settings.LOG_LEVEL)
    init_sentry(settings)

    await init_db()
    if args.command == "init-db":
        await close_db()
        return 0

    components = build_components(settings, _select_registry(args.tournaments))
    try:
        if args.command == "run":
            start_metrics_server(settings.METRICS_PORT)
            await cmd_run(components)
        elif args.command == "once":
            await cmd_once(components)
        elif args.command == "fetch-round":
            await cmd_fetch_round(components, args.tournament, args.round, args.phase)
        elif args.command == "sync-standings":
            await cmd_sync_standings(components)
        elif args.command == "reconcile":
            await cmd_reconcile(components)
        elif args.command == "status":
            await cmd_status(components)
    finally:
        await components.scraper.close()
        await close_db()
    return 0


def main() -> None:
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
