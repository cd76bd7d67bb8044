"""Competition registry: tournament/season IDs and knockout phases for the source."""

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional


@dataclass(frozen=True)
class KnockoutPhase:
    """One single-elimination stage, addressed by round ID + slug (+ optional prefix)."""

    round_id: int
    slug: str
    name: str
    prefix: Optional[str] = None


@dataclass(frozen=True)
class Competition:
    """Competition configuration."""

    key: str
    name: str
    tournament_id: int
    season_id: int
    total_rounds: int
    web_slug: str
    # League-phase round range; equals 1..total_rounds for plain leagues
    league_phase_rounds: Optional[tuple[int, int]] = None
    knockout_phases: tuple[KnockoutPhase, ...] = ()

    @property
    def is_cup(self) -> bool:
        return bool(self.knockout_phases)

    @property
    def first_round(self) -> int:
        return self.league_phase_rounds[0] if self.league_phase_rounds else 1

    @property
    def last_league_round(self) -> int:
        if self.league_phase_rounds:
            return self.league_phase_rounds[1]
        return self.total_rounds

    @property
    def web_url_path(self) -> str:
        return f"/tournament/football/{self.web_slug}/{self.tournament_id}"

    def phase_index(self, slug: str) -> Optional[int]:
        for index, phase in enumerate(self.knockout_phases):
            if phase.slug == slug:
                return index
        return None


@dataclass
class TournamentRegistry:
    """The fixed set of monitored competitions.

    Built once and handed to the scraper and the round scheduler; nothing
    reaches for it as a global.
    """

    competitions: list[Competition] = field(default_factory=list)

    def __post_init__(self):
        self._by_id = {c.tournament_id: c for c in self.competitions}
        if len(self._by_id) != len(self.competitions):
            raise ValueError("Duplicate tournament_id in registry")

    def __iter__(self) -> Iterator[Competition]:
        return iter(self.competitions)

    def __len__(self) -> int:
        return len(self.competitions)

    def get(self, tournament_id: int) -> Optional[Competition]:
        return self._by_id.get(tournament_id)

    def by_key(self, key: str) -> Optional[Competition]:
        lowered = key.lower()
        for competition in self.competitions:
            if competition.key.lower() == lowered:
                return competition
        return None

    @property
    def monitored_ids(self) -> frozenset[int]:
        return frozenset(self._by_id)

    def subset(self, keys: Iterable[str]) -> "TournamentRegistry":
        wanted = {k.lower() for k in keys}
        return TournamentRegistry([c for c in self.competitions if c.key.lower() in wanted])


# =============================================================================
# 2025/26 seasons
# =============================================================================

PREMIER_LEAGUE = Competition(
    key="premier-league",
    name="Premier League",
    tournament_id=17,
    season_id=76986,
    total_rounds=38,
    web_slug="england/premier-league",
)

LA_LIGA = Competition(
    key="laliga",
    name="LaLiga",
    tournament_id=8,
    season_id=77559,
    total_rounds=38,
    web_slug="spain/laliga",
)

SERIE_A = Competition(
    key="serie-a",
    name="Serie A",
    tournament_id=23,
    season_id=76457,
    total_rounds=38,
    web_slug="italy/serie-a",
)

LIGUE_1 = Competition(
    key="ligue-1",
    name="Ligue 1",
    tournament_id=34,
    season_id=77356,
    total_rounds=34,
    web_slug="france/ligue-1",
)

BUNDESLIGA = Competition(
    key="bundesliga",
    name="Bundesliga",
    tournament_id=35,
    season_id=77333,
    total_rounds=34,
    web_slug="germany/bundesliga",
)

BRASILEIRAO = Competition(
    key="brasileirao",
    name="Brasileirão Série A",
    tournament_id=325,
    season_id=87678,
    total_rounds=38,
    web_slug="brazil/brasileirao-serie-a",
)

# League phase (rounds 1-8) followed by knockout phases. Round ID 5 is reused
# by the source for both league-phase round 5 and the round of 16.
CHAMPIONS_LEAGUE = Competition(
    key="champions-league",
    name="UEFA Champions League",
    tournament_id=7,
    season_id=76953,
    total_rounds=13,
    web_slug="europe/uefa-champions-league",
    league_phase_rounds=(1, 8),
    knockout_phases=(
        KnockoutPhase(round_id=636, slug="playoff-round", name="Playoff Round"),
        KnockoutPhase(round_id=5, slug="round-of-16", name="Round of 16"),
        KnockoutPhase(round_id=27, slug="quarterfinals", name="Quarter Finals"),
        KnockoutPhase(round_id=28, slug="semifinals", name="Semi Finals"),
        KnockoutPhase(round_id=29, slug="final", name="Final"),
    ),
)

DEFAULT_REGISTRY = TournamentRegistry([
    PREMIER_LEAGUE,
    LA_LIGA,
    SERIE_A,
    LIGUE_1,
    BUNDESLIGA,
    BRASILEIRAO,
    CHAMPIONS_LEAGUE,
])
