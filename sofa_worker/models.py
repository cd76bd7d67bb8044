"""Database models using SQLModel."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _timestamp_column(nullable: bool = True) -> Column:
    # A Column instance belongs to a single table
    return Column(DateTime(timezone=True), nullable=nullable)


class ProcessingStatus(str, Enum):
    """Worker-owned lifecycle of a fixture. Read paths never change it."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    ENRICHED = "Enriched"
    POSTPONED = "Postponed"
    CANCELLED = "Cancelled"
    PARTIAL_DATA = "PartialData"
    ERROR = "Error"


TERMINAL_STATUSES = frozenset({
    ProcessingStatus.ENRICHED,
    ProcessingStatus.CANCELLED,
    ProcessingStatus.POSTPONED,
})

# Statuses whose row counts as the valid sibling of a postponed/cancelled duplicate
VALID_SIBLING_STATUSES = frozenset({
    ProcessingStatus.PENDING,
    ProcessingStatus.IN_PROGRESS,
    ProcessingStatus.ENRICHED,
})


class Fixture(SQLModel, table=True):
    """A match as published by the source, keyed by the source's event ID."""

    __tablename__ = "fixtures"

    id: int = Field(
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
        description="Source event ID",
    )
    tournament_id: int = Field(index=True, description="Unique tournament ID")
    season_id: int = Field(index=True)
    round: int = Field(index=True, description="Round number or knockout round ID")
    round_slug: Optional[str] = Field(
        default=None, max_length=50, description="Knockout phase slug, NULL for league rounds"
    )

    home_team_id: Optional[int] = Field(default=None)
    home_team: str = Field(max_length=255)
    away_team_id: Optional[int] = Field(default=None)
    away_team: str = Field(max_length=255)
    home_score: Optional[int] = Field(default=None)
    away_score: Optional[int] = Field(default=None)

    status: str = Field(max_length=50, default="Not started", description="Source status text")
    status_type: Optional[str] = Field(default=None, max_length=30)
    start_timestamp: int = Field(index=True, description="Kick-off, unix seconds UTC")

    stadium: Optional[str] = Field(default=None, max_length=255)
    referee: Optional[str] = Field(default=None, max_length=255)
    attendance: Optional[int] = Field(default=None)

    processing_status: ProcessingStatus = Field(default=ProcessingStatus.PENDING, index=True)
    enrichment_attempts: int = Field(default=0)
    last_enrichment_attempt: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())
    last_enrichment_error: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column(nullable=False))


class FixtureStatistic(SQLModel, table=True):
    """One statistic line of a fixture (replaced wholesale on every enrichment)."""

    __tablename__ = "fixture_statistics"

    id: Optional[int] = Field(default=None, primary_key=True)
    fixture_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("fixtures.id"), index=True, nullable=False),
    )
    period: str = Field(max_length=10, description="ALL, 1ST, 2ND")
    group_name: Optional[str] = Field(default=None, max_length=100)
    name: str = Field(max_length=100)
    home_value: Optional[str] = Field(default=None, max_length=50)
    away_value: Optional[str] = Field(default=None, max_length=50)
    home_numeric: Optional[float] = Field(default=None)
    away_numeric: Optional[float] = Field(default=None)
    compare_code: Optional[int] = Field(
        default=None, description="1 = home better, 2 = away better, 3 = tie"
    )


class FixtureIncident(SQLModel, table=True):
    """Goal, card, substitution... of a fixture (replaced wholesale on every enrichment)."""

    __tablename__ = "fixture_incidents"

    id: Optional[int] = Field(default=None, primary_key=True)
    fixture_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("fixtures.id"), index=True, nullable=False),
    )
    sequence: int = Field(default=0, description="Position in time order")
    incident_type: str = Field(max_length=50)
    incident_class: Optional[str] = Field(default=None, max_length=50)
    time: Optional[int] = Field(default=None)
    added_time: Optional[int] = Field(default=None)
    is_home: Optional[bool] = Field(default=None)
    player_name: Optional[str] = Field(default=None, max_length=255)
    assist_name: Optional[str] = Field(default=None, max_length=255)


class RoundState(SQLModel, table=True):
    """Progress counters and soft lock for one (tournament, season, round)."""

    __tablename__ = "round_states"
    __table_args__ = (
        UniqueConstraint("tournament_id", "season_id", "round", name="uq_round_state"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(index=True)
    season_id: int
    round: int

    total_matches: int = Field(default=0)
    enriched_matches: int = Field(default=0)
    postponed_matches: int = Field(default=0)
    cancelled_matches: int = Field(default=0)
    is_fully_processed: bool = Field(default=False)

    locked_by: Optional[str] = Field(default=None, max_length=100)
    locked_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())
    failed_attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column(nullable=False))
    last_check: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())
    completed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp_column())

    def should_be_marked_complete(self) -> bool:
        # Postponed fixtures keep the round open
        return self.enriched_matches + self.cancelled_matches == self.total_matches


class Standing(SQLModel, table=True):
    """League table row for one team."""

    __tablename__ = "standings"
    __table_args__ = (
        UniqueConstraint("tournament_id", "season_id", "team_id", name="uq_standing_team"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(index=True)
    season_id: int
    team_id: int
    team_name: str = Field(max_length=255)
    position: int
    matches: int = Field(default=0)
    wins: int = Field(default=0)
    draws: int = Field(default=0)
    losses: int = Field(default=0)
    goals_for: int = Field(default=0)
    goals_against: int = Field(default=0)
    goal_difference: int = Field(default=0)
    points: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp_column(nullable=False))


class StandingPromotion(SQLModel, table=True):
    """Promotion zone marker attached to a standing row."""

    __tablename__ = "standing_promotions"

    id: Optional[int] = Field(default=None, primary_key=True)
    standing_id: int = Field(foreign_key="standings.id", index=True)
    promotion_id: Optional[int] = Field(default=None)
    text: str = Field(max_length=255)
