"""
Sofascore scraper built on a BrowserSession.

Requests are issued from inside the warm page with `fetch()`, so they carry
the site's cookies, origin and referrer exactly like the site's own SPA.

Response handling:
    200          -> parsed JSON
    404          -> None ("not available yet", not an error)
    anything else, invalid JSON, in-page failure -> SourceError (retried)
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from sofa_worker.config import Settings
from sofa_worker.etl.base import (
    EnrichmentBundle,
    EventData,
    FixtureSource,
    IncidentData,
    SourceError,
    StandingRowData,
    StatisticItemData,
)
from sofa_worker.etl.browser_session import BrowserOptions, BrowserSession
from sofa_worker.etl.competitions import Competition, KnockoutPhase, TournamentRegistry
from sofa_worker.etl.payloads import (
    parse_event_details,
    parse_events,
    parse_incidents,
    parse_standings,
    parse_statistics,
)
from sofa_worker.etl.retry import RetryPolicy, with_retry
from sofa_worker.telemetry import record_scraper_request, record_scraper_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# URL and timeout are passed as arguments, never interpolated into the script
FETCH_SCRIPT = """async ([url, timeoutMs]) => {
    const controller = new AbortController();
    const timer = setTimeout(() => controller.abort(), timeoutMs);
    try {
        const res = await fetch(url, {
            credentials: 'include',
            headers: {'Accept': 'application/json'},
            signal: controller.signal,
        });
        return {status: res.status, text: await res.text()};
    } catch (e) {
        return {status: 0, text: String(e)};
    } finally {
        clearTimeout(timer);
    }
}"""

RETRYABLE_ERRORS = (SourceError, PlaywrightError, asyncio.TimeoutError)


async def fetch_json(page: Page, url: str, timeout_ms: int = 30000) -> Optional[Any]:
    """Run an in-page fetch and decode the JSON body; None on 404."""
    result = await page.evaluate(FETCH_SCRIPT, [url, timeout_ms])
    if not isinstance(result, dict):
        raise SourceError("In-page fetch returned no result", url=url)

    status = result.get("status")
    text = result.get("text") or ""

    if status == 404:
        logger.debug(f"[SCRAPER] Not found (404): {url}")
        return None
    if status != 200:
        detail = text[:200] if status == 0 else f"HTTP {status}"
        raise SourceError(f"Fetch failed for {url}: {detail}", status=status, url=url)

    try:
        return json.loads(text)
    except ValueError as e:
        raise SourceError(f"Invalid JSON from {url}: {e}", status=status, url=url) from e


class ScraperClient(FixtureSource):
    """Typed fetch operations against the source's internal JSON API."""

    def __init__(
        self,
        session: BrowserSession,
        registry: TournamentRegistry,
        api_base: str = "https://www.sofascore.com/api/v1",
        web_base: str = "https://www.sofascore.com",
        retry_policy: Optional[RetryPolicy] = None,
        request_delay_seconds: float = 0.5,
        fetch_timeout_ms: int = 30000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session = session
        self._registry = registry
        self._api_base = api_base.rstrip("/")
        self._web_base = web_base.rstrip("/")
        self._retry = retry_policy or RetryPolicy()
        self._request_delay = request_delay_seconds
        self._fetch_timeout_ms = fetch_timeout_ms
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: TournamentRegistry,
        session: Optional[BrowserSession] = None,
    ) -> "ScraperClient":
        return cls(
            session=session or BrowserSession(BrowserOptions.from_settings(settings)),
            registry=registry,
            api_base=settings.SOFASCORE_API_BASE,
            web_base=settings.SOFASCORE_WEB_BASE,
            retry_policy=RetryPolicy(
                max_attempts=settings.SCRAPER_MAX_ATTEMPTS,
                delay_seconds=settings.SCRAPER_RETRY_DELAY_SECONDS,
                backoff=settings.SCRAPER_RETRY_BACKOFF,
            ),
            request_delay_seconds=settings.SCRAPER_REQUEST_DELAY_SECONDS,
            fetch_timeout_ms=settings.SCRAPER_FETCH_TIMEOUT_MS,
        )

    @property
    def session(self) -> BrowserSession:
        return self._session

    @property
    def registry(self) -> TournamentRegistry:
        return self._registry

    async def close(self) -> None:
        await self._session.close()

    # ─── Plumbing ─────────────────────────────────────────────────────────────

    async def _call(self, operation: str, page_op: Callable[[Page], Awaitable[T]]) -> T:
        """Run `page_op` in the session under the retry envelope."""

        async def attempt() -> T:
            return await self._session.run(page_op)

        async def on_failure(attempt_index: int, error: BaseException) -> None:
            record_scraper_retry(operation)
            logger.warning(f"[SCRAPER] {operation} attempt {attempt_index + 1} failed: {error}")
            await self._session.close()

        try:
            result = await with_retry(
                attempt,
                self._retry,
                name=f"scraper.{operation}",
                retry_on=RETRYABLE_ERRORS,
                on_failure=on_failure,
                sleep=self._sleep,
            )
        except Exception:
            record_scraper_request(operation, "error")
            raise
        record_scraper_request(operation, "not_found" if result is None else "ok")
        return result

    def _api(self, path: str) -> str:
        return f"{self._api_base}{path}"

    async def _fetch(self, page: Page, path: str) -> Optional[Any]:
        return await fetch_json(page, self._api(path), self._fetch_timeout_ms)

    async def _open_competition_page(self, page: Page, competition: Competition) -> None:
        """Navigate to the competition page so API calls carry it as referrer."""
        url = f"{self._web_base}{competition.web_url_path}"
        try:
            await page.goto(url, wait_until="domcontentloaded")
        except PlaywrightTimeoutError:
            logger.warning(f"[SCRAPER] Navigation to {competition.name} page slow, continuing")
        await self._sleep(self._request_delay)

    def _fill_from_competition(
        self,
        events: list[EventData],
        competition: Competition,
        round_number: Optional[int] = None,
        round_slug: Optional[str] = None,
    ) -> list[EventData]:
        for event in events:
            if event.tournament_id is None:
                event.tournament_id = competition.tournament_id
            if event.season_id is None:
                event.season_id = competition.season_id
            if round_number is not None:
                event.round = round_number
            if round_slug is not None:
                event.round_slug = round_slug
        return events

    # ─── Event lists ──────────────────────────────────────────────────────────

    async def get_live_matches(self) -> list[EventData]:
        """Live events, filtered to monitored tournaments."""
        payload = await self._call(
            "live", lambda page: self._fetch(page, "/sport/football/events/live")
        )
        events = parse_events(payload)

        monitored = []
        for event in events:
            competition = self._registry.get(event.tournament_id)
            if competition is None:
                continue
            if event.season_id is None:
                event.season_id = competition.season_id
            monitored.append(event)

        logger.debug(f"[SCRAPER] Live feed: {len(events)} events, {len(monitored)} monitored")
        return monitored

    async def get_round_matches(self, competition: Competition, round_number: int) -> list[EventData]:
        path = (
            f"/unique-tournament/{competition.tournament_id}/season/{competition.season_id}"
            f"/events/round/{round_number}"
        )

        async def op(page: Page):
            await self._open_competition_page(page, competition)
            return await self._fetch(page, path)

        payload = await self._call("round", op)
        events = self._fill_from_competition(parse_events(payload), competition, round_number=round_number)
        if not events:
            logger.warning(f"[SCRAPER] {competition.name} round {round_number}: no events published yet")
        return events

    async def get_knockout_matches(
        self, competition: Competition, phase: KnockoutPhase
    ) -> list[EventData]:
        path = (
            f"/unique-tournament/{competition.tournament_id}/season/{competition.season_id}"
            f"/events/round/{phase.round_id}/slug/{phase.slug}"
        )
        if phase.prefix:
            path += f"/prefix/{phase.prefix}"

        async def op(page: Page):
            await self._open_competition_page(page, competition)
            return await self._fetch(page, path)

        payload = await self._call("knockout", op)
        events = self._fill_from_competition(
            parse_events(payload), competition, round_number=phase.round_id, round_slug=phase.slug
        )
        if not events:
            logger.warning(f"[SCRAPER] {competition.name} {phase.name}: no events published yet")
        return events

    # ─── Single fixture ───────────────────────────────────────────────────────

    async def get_match_details(self, fixture_id: int) -> Optional[EventData]:
        payload = await self._call("details", lambda page: self._fetch(page, f"/event/{fixture_id}"))
        return parse_event_details(payload)

    async def get_match_statistics(self, fixture_id: int) -> list[StatisticItemData]:
        payload = await self._call(
            "statistics", lambda page: self._fetch(page, f"/event/{fixture_id}/statistics")
        )
        return parse_statistics(payload)

    async def get_match_incidents(self, fixture_id: int) -> list[IncidentData]:
        payload = await self._call(
            "incidents", lambda page: self._fetch(page, f"/event/{fixture_id}/incidents")
        )
        return parse_incidents(payload)

    async def enrich_fixture(self, fixture_id: int) -> EnrichmentBundle:
        """Details, statistics and incidents in one session operation."""

        async def op(page: Page) -> EnrichmentBundle:
            details = await self._fetch(page, f"/event/{fixture_id}")
            await self._sleep(self._request_delay)
            statistics = await self._fetch(page, f"/event/{fixture_id}/statistics")
            await self._sleep(self._request_delay)
            incidents = await self._fetch(page, f"/event/{fixture_id}/incidents")
            return EnrichmentBundle(
                event=parse_event_details(details),
                statistics=parse_statistics(statistics),
                incidents=parse_incidents(incidents),
            )

        return await self._call("enrich", op)

    # ─── Standings ────────────────────────────────────────────────────────────

    async def get_standings(self, competition: Competition) -> list[StandingRowData]:
        path = (
            f"/unique-tournament/{competition.tournament_id}/season/{competition.season_id}"
            f"/standings/total"
        )

        async def op(page: Page):
            await self._open_competition_page(page, competition)
            return await self._fetch(page, path)

        payload = await self._call("standings", op)
        return parse_standings(payload)
