"""Transfer objects, status vocabulary and the abstract fixture source."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sofa_worker.etl.competitions import Competition, KnockoutPhase

UNKNOWN_TEAM = "Unknown"

# Source status descriptions that mean the match is over
FINISHED_STATUSES = ("Ended", "Finished", "AET", "AP")
NOT_STARTED_STATUS = "Not started"
POSTPONED_STATUS = "Postponed"


class ScraperError(RuntimeError):
    """Base class for scraping failures."""


class BrowserSessionError(ScraperError):
    """The browser session could not be initialised or is unusable."""


class SourceError(ScraperError):
    """The source answered with something other than usable JSON."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class StatusKind(Enum):
    """Coarse meaning of a source status string."""

    NOT_STARTED = "not_started"
    LIVE = "live"
    FINISHED = "finished"
    POSTPONED = "postponed"
    CANCELLED = "cancelled"
    OTHER = "other"


_FINISHED_LOWER = {s.lower() for s in FINISHED_STATUSES}


def classify_status(description: Optional[str], status_type: Optional[str] = None) -> StatusKind:
    """Map the source's (description, type) pair onto a StatusKind."""
    text = (description or "").strip().lower()
    kind = (status_type or "").strip().lower()

    if text in _FINISHED_LOWER or kind == "finished":
        return StatusKind.FINISHED
    if text == "postponed" or kind == "postponed":
        return StatusKind.POSTPONED
    if text in ("cancelled", "canceled") or kind in ("cancelled", "canceled"):
        return StatusKind.CANCELLED
    if text in ("live", "inplay") or kind == "inprogress":
        return StatusKind.LIVE
    if text == "not started" or kind == "notstarted":
        return StatusKind.NOT_STARTED
    return StatusKind.OTHER


def normalize_status(description: Optional[str], status_type: Optional[str] = None) -> str:
    """Status text to persist; finished variants outside the known set become 'Ended'."""
    text = (description or "").strip()
    if classify_status(text, status_type) is StatusKind.FINISHED and text not in FINISHED_STATUSES:
        return "Ended"
    return text or NOT_STARTED_STATUS


@dataclass
class EventData:
    """Data transfer object for one event (fixture) as the source reports it."""

    id: int
    tournament_id: Optional[int]
    home_team: str
    away_team: str
    status: str
    start_timestamp: int
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    home_score: int = 0
    away_score: int = 0
    status_type: Optional[str] = None
    season_id: Optional[int] = None
    round: Optional[int] = None
    round_slug: Optional[str] = None
    tournament_name: Optional[str] = None
    # Only present on the detail payload
    stadium: Optional[str] = None
    referee: Optional[str] = None
    attendance: Optional[int] = None

    @property
    def kind(self) -> StatusKind:
        return classify_status(self.status, self.status_type)


@dataclass
class StatisticItemData:
    """One statistic line, e.g. Ball possession 55% / 45%."""

    period: str
    name: str
    home_value: Optional[str]
    away_value: Optional[str]
    group: Optional[str] = None
    home_numeric: Optional[float] = None
    away_numeric: Optional[float] = None
    compare_code: Optional[int] = None


@dataclass
class IncidentData:
    """Goal, card, substitution or period marker."""

    incident_type: str
    time: Optional[int] = None
    added_time: Optional[int] = None
    incident_class: Optional[str] = None
    is_home: Optional[bool] = None
    player_name: Optional[str] = None
    assist_name: Optional[str] = None


@dataclass
class StandingRowData:
    """One row of the authoritative ('total') league table."""

    team_id: int
    team_name: str
    position: int
    matches: int = 0
    wins: int = 0
    draws: int = 0
    losses: int = 0
    goals_for: int = 0
    goals_against: int = 0
    points: int = 0
    promotion_id: Optional[int] = None
    promotion_text: Optional[str] = None

    @property
    def goal_difference(self) -> int:
        return self.goals_for - self.goals_against


@dataclass
class EnrichmentBundle:
    """Details + statistics + incidents fetched in one session operation."""

    event: Optional[EventData]
    statistics: list[StatisticItemData] = field(default_factory=list)
    incidents: list[IncidentData] = field(default_factory=list)


class FixtureSource(ABC):
    """Abstract source of fixtures used by the worker and the round scheduler."""

    @abstractmethod
    async def get_live_matches(self) -> list[EventData]:
        """Live events restricted to monitored tournaments."""
        pass

    @abstractmethod
    async def get_round_matches(self, competition: Competition, round_number: int) -> list[EventData]:
        """Events of a numbered round; empty when not yet published."""
        pass

    @abstractmethod
    async def get_knockout_matches(
        self, competition: Competition, phase: KnockoutPhase
    ) -> list[EventData]:
        """Events of a named knockout phase; empty when not yet published."""
        pass

    @abstractmethod
    async def enrich_fixture(self, fixture_id: int) -> EnrichmentBundle:
        """Fetch details, statistics and incidents for one fixture."""
        pass

    @abstractmethod
    async def get_standings(self, competition: Competition) -> list[StandingRowData]:
        """Rows of the total table; empty when the source has none."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass
