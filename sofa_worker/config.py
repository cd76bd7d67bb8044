"""Worker configuration using Pydantic Settings."""

import socket
import uuid
from functools import lru_cache

from pydantic_settings import BaseSettings


def _default_instance_id() -> str:
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"


class Settings(BaseSettings):
    """Worker settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./sofa_worker.db"

    # Source endpoints
    SOFASCORE_WEB_BASE: str = "https://www.sofascore.com"
    SOFASCORE_API_BASE: str = "https://www.sofascore.com/api/v1"

    # ═══════════════════════════════════════════════════════════════
    # Browser session
    # ═══════════════════════════════════════════════════════════════
    BROWSER_HEADLESS: bool = True
    BROWSER_SESSION_MAX_AGE_MINUTES: int = 30   # Recycle the whole process after this
    BROWSER_SESSION_MAX_OPERATIONS: int = 0     # 0 = no operation budget
    BROWSER_NAVIGATION_TIMEOUT_MS: int = 60000
    BROWSER_LOCALE: str = "en-US"
    BROWSER_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    )
    BROWSER_STEALTH_ENABLED: bool = True
    BROWSER_BLOCK_RESOURCES: bool = True
    BROWSER_EXECUTABLE_PATH: str = ""           # Set in containers (system chromium)
    BROWSER_INIT_ATTEMPTS: int = 3
    BROWSER_INIT_RETRY_DELAY_SECONDS: float = 2.0

    # Scraper retry envelope
    SCRAPER_MAX_ATTEMPTS: int = 3
    SCRAPER_RETRY_DELAY_SECONDS: float = 2.0
    SCRAPER_RETRY_BACKOFF: float = 1.0          # 1.0 = fixed delay
    SCRAPER_REQUEST_DELAY_SECONDS: float = 0.5  # Gap between sub-requests of one enrichment
    SCRAPER_FETCH_TIMEOUT_MS: int = 30000

    # ═══════════════════════════════════════════════════════════════
    # Enrichment worker
    # ═══════════════════════════════════════════════════════════════
    WORKER_ACTIVE_DELAY_SECONDS: int = 60
    WORKER_IDLE_DELAY_SECONDS: int = 900
    WORKER_STARTUP_DELAY_SECONDS: int = 0
    WORKER_INTER_FIXTURE_DELAY_SECONDS: float = 2.0
    WORKER_CLOSE_BROWSER_WHEN_IDLE: bool = True
    WORKER_INSTANCE_ID: str = ""                # Empty = hostname + random suffix

    ENRICHMENT_MAX_ATTEMPTS: int = 3
    ENRICHMENT_BATCH_SIZE: int = 10
    LIMBO_BATCH_SIZE: int = 3
    LIMBO_CUTOFF_HOURS: int = 3

    # Round progression
    ROUND_DISCOVERY_INTERVAL_HOURS: float = 6.0
    ROUND_BOOTSTRAP_ENABLED: bool = True
    ROUND_LOCK_TIMEOUT_MINUTES: int = 30
    ROUND_TOURNAMENT_PAUSE_SECONDS: float = 0.5

    # Telemetry
    LOG_LEVEL: str = "INFO"
    METRICS_PORT: int = 0                       # 0 = exporter disabled
    SENTRY_DSN: str = ""
    SENTRY_ENABLED: bool = True
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.0

    @property
    def instance_id(self) -> str:
        """Identity used as the holder of round soft-locks."""
        if not self.WORKER_INSTANCE_ID:
            self.WORKER_INSTANCE_ID = _default_instance_id()
        return self.WORKER_INSTANCE_ID

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
