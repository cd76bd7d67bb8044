"""ETL module: browser session, scraper client and payload parsing."""

from sofa_worker.etl.base import (
    BrowserSessionError,
    FixtureSource,
    ScraperError,
    SourceError,
)
from sofa_worker.etl.browser_session import BrowserOptions, BrowserSession
from sofa_worker.etl.competitions import (
    DEFAULT_REGISTRY,
    Competition,
    KnockoutPhase,
    TournamentRegistry,
)
from sofa_worker.etl.retry import RetryPolicy, with_retry
from sofa_worker.etl.sofascore_scraper import ScraperClient

__all__ = [
    "BrowserOptions",
    "BrowserSession",
    "BrowserSessionError",
    "Competition",
    "DEFAULT_REGISTRY",
    "FixtureSource",
    "KnockoutPhase",
    "RetryPolicy",
    "ScraperClient",
    "ScraperError",
    "SourceError",
    "TournamentRegistry",
    "with_retry",
]
