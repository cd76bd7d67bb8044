"""
Playwright browser session for the source site.

One Chromium process, one context and one warm page that carries the site's
cookies. Every fetch goes through `run()`, which holds a single-slot lock and
always executes against a verified-healthy page. The whole process is
recycled when it fails a health check or exceeds its age/operation budget.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from sofa_worker.config import Settings
from sofa_worker.etl.base import BrowserSessionError
from sofa_worker.telemetry import record_browser_recycle, record_browser_start

logger = logging.getLogger(__name__)

T = TypeVar("T")

BLOCKED_RESOURCES = {"image", "stylesheet", "font", "media"}
HEALTH_CHECK_TIMEOUT_SECONDS = 10.0

BASE_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--no-first-run",
    "--disable-features=IsolateOrigins,site-per-process",
    "--js-flags=--max-old-space-size=256",
]
# Memory savers for constrained containers
CONTAINER_LAUNCH_ARGS = ["--no-zygote", "--single-process"]


@dataclass(frozen=True)
class BrowserOptions:
    """Launch and recycling options for a BrowserSession."""

    web_base: str = "https://www.sofascore.com"
    headless: bool = True
    max_age_seconds: float = 1800.0
    max_operations: int = 0
    navigation_timeout_ms: int = 60000
    user_agent: Optional[str] = None
    locale: str = "en-US"
    stealth_enabled: bool = True
    block_resources: bool = True
    executable_path: Optional[str] = None
    init_attempts: int = 3
    init_retry_delay_seconds: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrowserOptions":
        return cls(
            web_base=settings.SOFASCORE_WEB_BASE,
            headless=settings.BROWSER_HEADLESS,
            max_age_seconds=settings.BROWSER_SESSION_MAX_AGE_MINUTES * 60,
            max_operations=settings.BROWSER_SESSION_MAX_OPERATIONS,
            navigation_timeout_ms=settings.BROWSER_NAVIGATION_TIMEOUT_MS,
            user_agent=settings.BROWSER_USER_AGENT or None,
            locale=settings.BROWSER_LOCALE,
            stealth_enabled=settings.BROWSER_STEALTH_ENABLED,
            block_resources=settings.BROWSER_BLOCK_RESOURCES,
            executable_path=settings.BROWSER_EXECUTABLE_PATH or None,
            init_attempts=settings.BROWSER_INIT_ATTEMPTS,
            init_retry_delay_seconds=settings.BROWSER_INIT_RETRY_DELAY_SECONDS,
        )

    @property
    def launch_args(self) -> list[str]:
        if self.executable_path:
            return BASE_LAUNCH_ARGS + CONTAINER_LAUNCH_ARGS
        return list(BASE_LAUNCH_ARGS)


class BrowserSession:
    """Owned headless-browser resource with a health predicate.

    `playwright_factory`, `stealth_factory`, `clock` and `sleep` are injectable
    so tests can drive the session without a real browser or real time.
    """

    def __init__(
        self,
        options: Optional[BrowserOptions] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        stealth_factory: Callable[[], Any] = Stealth,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._options = options or BrowserOptions()
        self._playwright_factory = playwright_factory
        self._stealth_factory = stealth_factory
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._playwright = None
        self._browser = None
        self._context = None
        self._page: Optional[Page] = None
        self._started_at: Optional[float] = None
        self._operations = 0

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_started(self) -> bool:
        return self._page is not None and self._started_at is not None

    @property
    def operations(self) -> int:
        return self._operations

    @property
    def age_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Launch browser, context and warm page. Fails with BrowserSessionError."""
        opts = self._options
        try:
            self._playwright = await self._playwright_factory().start()

            launch_kwargs = {"headless": opts.headless, "args": opts.launch_args}
            if opts.executable_path:
                launch_kwargs["executable_path"] = opts.executable_path
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)

            context_kwargs = {
                "viewport": {"width": 1366, "height": 900},
                "locale": opts.locale,
            }
            if opts.user_agent:
                context_kwargs["user_agent"] = opts.user_agent
            self._context = await self._browser.new_context(**context_kwargs)

            if opts.stealth_enabled:
                await self._stealth_factory().apply_stealth_async(self._context)

            self._page = await self._context.new_page()
            self._page.set_default_timeout(opts.navigation_timeout_ms)
            if opts.block_resources:
                await self._page.route("**/*", self._block_resources)

            await self._establish_session()
        except Exception as e:
            logger.error(f"[BROWSER] Session initialization failed: {e}")
            await self.close()
            raise BrowserSessionError(f"Browser session initialization failed: {e}") from e

        self._started_at = self._clock()
        self._operations = 0
        record_browser_start()
        logger.info("[BROWSER] Session ready")

    async def _establish_session(self) -> None:
        """Open the site once so the page carries its cookies and origin."""
        try:
            await self._page.goto(
                self._options.web_base,
                wait_until="domcontentloaded",
                timeout=self._options.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError:
            logger.warning("[BROWSER] Initial navigation slow, continuing anyway")

    async def _block_resources(self, route) -> None:
        if route.request.resource_type in BLOCKED_RESOURCES:
            await route.abort()
        else:
            await route.continue_()

    async def close(self) -> None:
        """Best-effort teardown; secondary errors are logged and ignored. Idempotent."""
        page, context, browser, playwright = self._page, self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None
        self._started_at = None

        for name, closer in (
            ("page", page.close if page is not None else None),
            ("context", context.close if context is not None else None),
            ("browser", browser.close if browser is not None else None),
            ("playwright", playwright.stop if playwright is not None else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.debug(f"[BROWSER] Ignoring error while closing {name}: {e}")

        if browser is not None:
            logger.info("[BROWSER] Session closed")

    # ─── Health ───────────────────────────────────────────────────────────────

    async def ensure_healthy(self) -> bool:
        """True when the process is alive and the page answers a trivial evaluation."""
        if not self.is_started:
            return False
        try:
            if not self._browser.is_connected() or self._page.is_closed():
                return False
            result = await asyncio.wait_for(
                self._page.evaluate("'health-check'"),
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.warning(f"[BROWSER] Health check failed: {e}")
            return False
        return result == "health-check"

    async def _recycle_reason(self) -> Optional[str]:
        if not self.is_started:
            return "not_started"
        opts = self._options
        if opts.max_age_seconds > 0 and self.age_seconds >= opts.max_age_seconds:
            return "max_age"
        if opts.max_operations > 0 and self._operations >= opts.max_operations:
            return "max_operations"
        if not await self.ensure_healthy():
            return "unhealthy"
        return None

    async def _acquire_healthy(self) -> Page:
        reason = await self._recycle_reason()
        if reason is None:
            return self._page

        if reason != "not_started":
            logger.info(
                f"[BROWSER] Recycling session ({reason}, age={self.age_seconds:.0f}s, "
                f"ops={self._operations})"
            )
            record_browser_recycle(reason)
            await self.close()

        attempts = max(1, self._options.init_attempts)
        last_error: Optional[BrowserSessionError] = None
        for attempt in range(1, attempts + 1):
            try:
                await self.start()
                return self._page
            except BrowserSessionError as e:
                last_error = e
                if attempt < attempts:
                    delay = self._options.init_retry_delay_seconds * attempt
                    logger.warning(
                        f"[BROWSER] Start attempt {attempt}/{attempts} failed, retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
        raise last_error

    async def acquire_healthy(self) -> Page:
        """Return a ready page, (re)initialising the browser when needed."""
        async with self._lock:
            return await self._acquire_healthy()

    async def run(self, operation: Callable[[Page], Awaitable[T]]) -> T:
        """Run one page operation against a healthy session, one at a time."""
        async with self._lock:
            page = await self._acquire_healthy()
            try:
                return await operation(page)
            finally:
                self._operations += 1
